"""Tests for the reconciliation driver against an in-memory remote system."""

import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from member_sync.database import TrackingDatabase
from member_sync.sync.client import RemoteSyncClient
from member_sync.sync.config import RemoteSystemConfig
from member_sync.sync.reconciler import ReconcileOptions, Reconciler, SyncAction

from conftest import ENTITY_PATH, FakeRemoteSession, record


@pytest.fixture
def reconciler(tracking_db, client, sleeps):
    return Reconciler(tracking_db, client, record_delay_seconds=2.0, sleep=sleeps.append)


def test_end_to_end_create_skip_update_delete(reconciler, tracking_db, fake_remote):
    snapshot = [record("X1", "Alice", email="x1@example.com")]

    first = reconciler.run(snapshot)
    assert (first.created, first.updated, first.skipped, first.deleted) == (1, 0, 0, 0)
    remote_id = tracking_db.get_record("X1").remote_id
    assert fake_remote.entities[remote_id]["name"] == "Alice"
    assert fake_remote.entities[remote_id]["email"] == "x1@example.com"

    second = reconciler.run(snapshot)
    assert (second.created, second.updated, second.skipped) == (0, 0, 1)

    third = reconciler.run([record("X1", "Alicia", email="x1@example.com")])
    assert (third.created, third.updated, third.skipped) == (0, 1, 0)
    assert fake_remote.entities[remote_id]["name"] == "Alicia"

    fourth = reconciler.run([], ReconcileOptions(allow_empty_snapshot=True))
    assert fourth.deleted == 1
    assert fake_remote.entities == {}
    assert tracking_db.count() == 0
    assert fourth.success


def test_result_totals(reconciler, fake_remote):
    fake_remote.add_entity(email="b@example.com")

    result = reconciler.run([record("A", email="a@example.com"), record("B", email="b@example.com")])

    assert result.total == 2
    assert result.synced == 2
    assert result.created == 1
    assert result.updated == 1
    assert result.errors == []
    assert result.to_dict()["synced"] == 2


@settings(max_examples=10)
@given(st.dictionaries(
    st.text(alphabet="ABCDEFGH0123456789", min_size=1, max_size=6),
    st.text(alphabet="abcdefghij ", max_size=12),
    min_size=1,
    max_size=6,
))
def test_second_run_without_changes_does_nothing(members):
    with tempfile.TemporaryDirectory() as tmpdir:
        fake_remote = FakeRemoteSession()
        client = RemoteSyncClient(
            RemoteSystemConfig(name="helpdesk", base_url="https://remote.example.com", api_key="k",
                               entity_path=ENTITY_PATH),
            session=fake_remote,
            sleep=lambda seconds: None,
        )
        snapshot = [record(external_id, name) for external_id, name in members.items()]

        with TrackingDatabase(Path(tmpdir) / "tracking.duckdb") as db:
            reconciler = Reconciler(db, client, record_delay_seconds=0)
            reconciler.run(snapshot)
            calls_before = len(fake_remote.calls)

            again = reconciler.run(snapshot)

        assert (again.created, again.updated, again.deleted) == (0, 0, 0)
        assert again.skipped == len(members)
        assert len(fake_remote.calls) == calls_before


def test_force_pushes_unchanged_records(reconciler):
    snapshot = [record("A")]
    reconciler.run(snapshot)

    result = reconciler.run(snapshot, ReconcileOptions(force=True))

    assert (result.updated, result.skipped) == (1, 0)


def test_update_404_recreates_and_relinks(reconciler, tracking_db, fake_remote):
    reconciler.run([record("A", "Alice")])
    old_id = tracking_db.get_record("A").remote_id
    del fake_remote.entities[old_id]

    result = reconciler.run([record("A", "Alicia")])

    new_id = tracking_db.get_record("A").remote_id
    assert result.created == 1
    assert result.errors == []
    assert new_id != old_id
    assert fake_remote.entities[new_id]["name"] == "Alicia"
    assert not tracking_db.get_record("A").needs_sync


def test_existing_remote_entity_is_linked_instead_of_created(reconciler, tracking_db, fake_remote):
    existing = fake_remote.add_entity(email="a@example.com", name="Old")

    result = reconciler.run([record("A", "Alice", email="a@example.com")])

    assert (result.created, result.updated) == (0, 1)
    assert tracking_db.get_record("A").remote_id == existing
    assert fake_remote.calls_for("POST") == []
    assert fake_remote.entities[existing]["name"] == "Alice"


@pytest.mark.parametrize("status, body", [
    (409, {"message": "Conflict"}),
    (400, {"_embedded": {"errors": [{"path": "emails", "message": "Customer already exists"}]}}),
])
def test_create_conflict_falls_back_to_lookup(reconciler, tracking_db, fake_remote, status, body):
    existing = fake_remote.add_entity(email="a@example.com")
    # The first lookup misses (e.g. search index lag), the create collides
    fake_remote.queue("GET", ENTITY_PATH, 200, [])
    fake_remote.queue("POST", ENTITY_PATH, status, body)

    result = reconciler.run([record("A", email="a@example.com")])

    assert result.errors == []
    assert result.updated == 1
    assert tracking_db.get_record("A").remote_id == existing


def test_conflict_without_match_requires_manual_linking(reconciler, tracking_db, fake_remote):
    fake_remote.queue("POST", ENTITY_PATH, 409, {"message": "Conflict"})

    result = reconciler.run([record("A", email="a@example.com")])

    assert len(result.errors) == 1
    assert result.errors[0].error_code == "linking_required"
    assert result.errors[0].secondary_key == "a@example.com"
    assert "manual linking" in result.errors[0].message
    assert tracking_db.get_record("A").remote_id is None
    assert not result.success


def test_failing_record_does_not_abort_run(reconciler, tracking_db, fake_remote):
    fake_remote.queue("POST", ENTITY_PATH, 422, {"message": "invalid"})

    result = reconciler.run([record("A"), record("B"), record("C")])

    assert result.created == 2
    assert [error.external_id for error in result.errors] == ["A"]
    assert tracking_db.get_record("A").needs_sync
    assert not tracking_db.get_record("B").needs_sync

    retry = reconciler.run([record("A"), record("B"), record("C")])
    assert (retry.created, retry.skipped) == (1, 2)


def test_exhausted_retries_become_record_failure(reconciler, fake_remote, sleeps):
    fake_remote.queue("POST", ENTITY_PATH, 503, times=4)

    result = reconciler.run([record("A"), record("B")])

    assert [error.external_id for error in result.errors] == ["A"]
    assert result.created == 1
    assert sleeps == [1, 2, 4, 2.0]


def test_delay_only_between_records(reconciler, sleeps):
    reconciler.run([record("A"), record("B"), record("C")])

    assert sleeps == [2.0, 2.0]


def test_unsynced_orphan_is_removed_locally_only(reconciler, tracking_db, fake_remote):
    fake_remote.queue("POST", ENTITY_PATH, 422)
    reconciler.run([record("A"), record("B")])
    assert tracking_db.get_record("A").remote_id is None
    posts_before = len(fake_remote.calls_for("POST"))

    result = reconciler.run([record("B")])

    assert tracking_db.get_record("A") is None
    assert result.deleted == 0
    assert result.created == 0
    assert len(fake_remote.calls_for("POST")) == posts_before
    assert fake_remote.calls_for("DELETE") == []


def test_records_outside_snapshot_are_never_pushed_when_sweep_is_skipped(reconciler, tracking_db, fake_remote):
    fake_remote.queue("POST", ENTITY_PATH, 422)
    reconciler.run([record("A"), record("B")])
    calls_before = len(fake_remote.calls)

    result = reconciler.run([record("B")], ReconcileOptions(min_snapshot_ratio=1.0))

    assert result.suspect_snapshot
    assert (result.created, result.updated, result.skipped) == (0, 0, 1)
    assert fake_remote.calls[calls_before:] == []
    assert tracking_db.get_record("A").remote_id is None


def test_forced_run_with_empty_snapshot_changes_nothing_remotely(reconciler, fake_remote):
    reconciler.run([record("A"), record("B")])
    calls_before = len(fake_remote.calls)

    result = reconciler.run([], ReconcileOptions(force=True))

    assert result.suspect_snapshot
    assert result.skipped >= 0
    assert (result.total, result.updated, result.skipped) == (0, 0, 0)
    assert fake_remote.calls[calls_before:] == []


def test_synced_payload_is_remembered(reconciler, tracking_db):
    reconciler.run([record("A", "Alice", team="JO11")])

    stored = tracking_db.get_record("A")
    assert stored.last_synced_payload == {"name": "Alice", "team": "JO11"}
    assert stored.field_changes() == {}


def test_lost_remote_entity_keeps_last_push_time_when_recreate_fails(reconciler, tracking_db, fake_remote):
    reconciler.run([record("A", "Alice")])
    pushed = tracking_db.get_record("A")
    del fake_remote.entities[pushed.remote_id]
    fake_remote.queue("POST", ENTITY_PATH, 422)

    result = reconciler.run([record("A", "Alicia")])

    stored = tracking_db.get_record("A")
    assert [error.external_id for error in result.errors] == ["A"]
    assert stored.remote_id is None
    assert stored.last_synced_hash is None
    assert stored.last_synced_at == pushed.last_synced_at


def test_orphan_already_gone_remotely_counts_as_deleted(reconciler, tracking_db, fake_remote):
    reconciler.run([record("A"), record("B")])
    del fake_remote.entities[tracking_db.get_record("A").remote_id]

    result = reconciler.run([record("B")])

    assert result.deleted == 1
    assert result.errors == []
    assert tracking_db.get_record("A") is None


def test_orphan_delete_failure_keeps_local_record(reconciler, tracking_db, fake_remote):
    reconciler.run([record("A"), record("B")])
    remote_id = tracking_db.get_record("A").remote_id
    fake_remote.queue("DELETE", f"{ENTITY_PATH}/{remote_id}", 403, {"message": "forbidden"})

    result = reconciler.run([record("B")])

    assert result.deleted == 0
    assert [error.external_id for error in result.errors] == ["A"]
    assert tracking_db.get_record("A") is not None

    retried = reconciler.run([record("B")])
    assert retried.deleted == 1


def test_empty_snapshot_skips_sweep_and_flags_run(reconciler, tracking_db, fake_remote):
    reconciler.run([record("A")])

    result = reconciler.run([])

    assert result.suspect_snapshot
    assert result.sweep_skipped
    assert result.deleted == 0
    assert not result.success
    assert tracking_db.count() == 1
    assert len(fake_remote.entities) == 1


@pytest.mark.parametrize("ratio, suspect", [(0.5, True), (0.25, False)])
def test_shrunken_snapshot_guard(reconciler, tracking_db, ratio, suspect):
    reconciler.run([record(external_id) for external_id in "ABCD"])

    result = reconciler.run([record("A")], ReconcileOptions(min_snapshot_ratio=ratio))

    assert result.suspect_snapshot is suspect
    assert tracking_db.count() == (4 if suspect else 1)


def test_sweep_can_be_disabled(reconciler, tracking_db):
    reconciler.run([record("A"), record("B")])

    result = reconciler.run([record("A")], ReconcileOptions(sweep_orphans=False))

    assert result.sweep_skipped
    assert not result.suspect_snapshot
    assert tracking_db.count() == 2


def test_dry_run_changes_nothing(reconciler, tracking_db, fake_remote):
    reconciler.run([record("A", "Alice"), record("B")])
    calls_before = len(fake_remote.calls)
    before = {r.external_id: r for r in tracking_db.get_all()}

    result = reconciler.run([record("A", "Alicia"), record("C")], ReconcileOptions(dry_run=True))

    assert result.dry_run
    assert (result.would_create, result.would_update, result.would_delete) == (1, 1, 1)
    assert result.skipped == 0
    assert len(fake_remote.calls) == calls_before
    after = {r.external_id: r for r in tracking_db.get_all()}
    assert after.keys() == before.keys()
    assert after["A"].payload == {"name": "Alice"}


def test_dry_run_does_not_count_orphans_as_creates(reconciler, fake_remote):
    fake_remote.queue("POST", ENTITY_PATH, 422)
    reconciler.run([record("A"), record("B")])

    result = reconciler.run([record("B")], ReconcileOptions(dry_run=True))

    assert (result.would_create, result.would_update, result.would_delete) == (0, 0, 1)
    assert result.skipped == 1


def test_dry_run_logs_planned_actions(tracking_db, client):
    logger = Mock()
    reconciler = Reconciler(tracking_db, client, logger=logger, record_delay_seconds=0)

    reconciler.run([record("A")], ReconcileOptions(dry_run=True))

    messages = [call.args[0] for call in logger.info.call_args_list]
    assert any(message.startswith("[dry-run] CREATE A") for message in messages)


def test_custom_body_builder(tracking_db, client, fake_remote):
    def build(tracked, creating):
        return {"fields": tracked.payload, "code": tracked.external_id, "new": creating}

    reconciler = Reconciler(tracking_db, client, record_delay_seconds=0, body_builder=build)
    reconciler.run([record("A", "Alice")])

    (_, _, body, _), = fake_remote.calls_for("POST")
    assert body == {"fields": {"name": "Alice"}, "code": "A", "new": True}


def test_sync_record_reports_action(reconciler, tracking_db):
    tracking_db.upsert_many([record("A")])

    assert reconciler.sync_record(tracking_db.get_record("A")) == SyncAction.CREATE
    tracking_db.upsert_many([record("A", "Changed")])
    assert reconciler.sync_record(tracking_db.get_record("A")) == SyncAction.UPDATE
