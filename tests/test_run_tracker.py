"""Tests for run tracking and crash finalization."""

import sys
import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from member_sync.sync.reconciler import SyncErrorEntry
from member_sync.sync.run_tracker import (
    CrashSupervisor, MAX_MESSAGE_LENGTH, MAX_STACK_LENGTH, RunDatabase, RunOutcome, RunTracker, StepOutcome
)


@pytest.fixture
def runs_db_path(tmp_dir):
    return tmp_dir / "runs.duckdb"


@pytest.fixture
def tracker(runs_db_path):
    tracker = RunTracker("helpdesk", runs_db_path, logger=Mock())
    yield tracker
    tracker.close()


def read_run(db_path, run_id):
    with RunDatabase(db_path) as db:
        return db.get_run(run_id), db.get_steps(run_id), db.get_errors(run_id)


def test_run_lifecycle_aggregates_step_totals(tracker, runs_db_path):
    run_id = tracker.start_run()
    fetch = tracker.start_step("fetch-snapshot")
    tracker.end_step(fetch, StepOutcome.SUCCESS, detail={"records": 3})
    sync = tracker.start_step("helpdesk-sync")
    tracker.end_step(sync, StepOutcome.SUCCESS, created=2, updated=1, skipped=4, failed=1)
    tracker.record_errors("helpdesk-sync", sync, [
        SyncErrorEntry(external_id="X1", message="helpdesk API error (422)", secondary_key="x1@example.com"),
    ])
    tracker.end_run(RunOutcome.PARTIAL, {"created": 2})

    run, steps, errors = read_run(runs_db_path, run_id)
    assert run.pipeline == "helpdesk"
    assert run.outcome == "partial"
    assert (run.total_created, run.total_updated, run.total_skipped, run.total_failed) == (2, 1, 4, 1)
    assert run.summary == {"created": 2}
    assert run.finished_at is not None
    assert run.duration_ms >= 0
    assert [step.step_name for step in steps] == ["fetch-snapshot", "helpdesk-sync"]
    assert steps[0].detail == {"records": 3}
    assert all(step.outcome == "success" for step in steps)
    assert len(errors) == 1
    assert errors[0].member_identifier == "X1"
    assert errors[0].run_step_id == sync
    assert tracker.db is None


def test_unfinished_step_is_pending(tracker, runs_db_path):
    run_id = tracker.start_run()
    tracker.start_step("helpdesk-sync")
    tracker.close()

    _, steps, _ = read_run(runs_db_path, run_id)
    assert steps[0].outcome == "pending"


@pytest.mark.parametrize("outcome, expected", [(True, "success"), (False, "failure"), ("partial", "partial")])
def test_end_run_accepts_booleans_and_strings(runs_db_path, outcome, expected):
    tracker = RunTracker("helpdesk", runs_db_path)
    run_id = tracker.start_run()
    tracker.end_run(outcome)

    run, _, _ = read_run(runs_db_path, run_id)
    assert run.outcome == expected


def test_messages_and_stacks_are_truncated(tracker, runs_db_path):
    run_id = tracker.start_run()
    tracker.record_error("helpdesk-sync", "m" * 5000, stack="s" * 10000)
    tracker.end_run(RunOutcome.FAILURE)

    _, _, errors = read_run(runs_db_path, run_id)
    assert len(errors[0].error_message) == MAX_MESSAGE_LENGTH
    assert len(errors[0].error_stack) == MAX_STACK_LENGTH


def test_error_count_and_dict_entries(tracker, runs_db_path):
    run_id = tracker.start_run()
    tracker.record_errors("nikki-sync", None, 3)
    tracker.record_errors("nikki-sync", None, [{"email": "a@example.com", "error": "bad"}])
    tracker.record_errors("nikki-sync", None, [])
    tracker.end_run(RunOutcome.PARTIAL)

    _, _, errors = read_run(runs_db_path, run_id)
    assert [error.error_message for error in errors] == ["Step reported 3 error(s)", "bad"]
    assert errors[1].member_identifier == "a@example.com"


def test_storage_failures_are_swallowed(runs_db_path):
    logger = Mock()
    tracker = RunTracker("helpdesk", runs_db_path, logger=logger)
    tracker.db.close()
    tracker.db = Mock(insert_run=Mock(side_effect=RuntimeError("disk full")))

    assert tracker.start_run() is None
    logger.warning.assert_called_once()
    assert "disk full" in logger.warning.call_args.args[0]


def test_closed_tracker_is_a_no_op(tracker):
    tracker.start_run()
    tracker.close()

    assert tracker.start_step("helpdesk-sync") is None
    tracker.end_step(1, StepOutcome.SUCCESS)
    tracker.record_error("helpdesk-sync", "ignored")
    tracker.end_run(RunOutcome.SUCCESS)


def test_unopenable_database_degrades_to_warning(tmp_dir):
    logger = Mock()
    tracker = RunTracker("helpdesk", tmp_dir / "missing" / "dir" / "runs.duckdb", logger=logger)

    assert tracker.db is None
    assert tracker.start_run() is None
    logger.warning.assert_called_once()


def test_supervisor_finalizes_run_on_escaping_exception(tracker, runs_db_path):
    original_hook = sys.excepthook
    run_id = tracker.start_run()
    tracker.start_step("helpdesk-sync")

    with pytest.raises(ValueError):
        with CrashSupervisor(tracker):
            raise ValueError("boom")

    assert sys.excepthook is original_hook
    run, _, errors = read_run(runs_db_path, run_id)
    assert run.outcome == "failure"
    assert run.summary["crash"] is True
    assert errors[-1].step_name == "crash"
    assert errors[-1].error_message == "boom"
    assert "ValueError" in errors[-1].error_stack


def test_supervisor_leaves_finished_run_alone(tracker, runs_db_path):
    with CrashSupervisor(tracker):
        run_id = tracker.start_run()
        tracker.end_run(RunOutcome.SUCCESS)

    run, _, errors = read_run(runs_db_path, run_id)
    assert run.outcome == "success"
    assert errors == []


def test_excepthook_chains_to_previous_hook(tracker, runs_db_path, monkeypatch):
    previous = Mock()
    monkeypatch.setattr(sys, "excepthook", previous)
    run_id = tracker.start_run()
    supervisor = CrashSupervisor(tracker).install()
    error = RuntimeError("uncaught")

    sys.excepthook(RuntimeError, error, None)

    previous.assert_called_once_with(RuntimeError, error, None)
    supervisor.uninstall()
    assert sys.excepthook is previous
    run, _, _ = read_run(runs_db_path, run_id)
    assert run.outcome == "failure"


def test_thread_exceptions_finalize_run(tracker, runs_db_path, monkeypatch):
    previous = Mock()
    monkeypatch.setattr(threading, "excepthook", previous)
    run_id = tracker.start_run()
    supervisor = CrashSupervisor(tracker).install()
    args = SimpleNamespace(exc_type=KeyError, exc_value=KeyError("worker"), exc_traceback=None, thread=None)

    threading.excepthook(args)

    previous.assert_called_once_with(args)
    supervisor.uninstall()
    run, _, errors = read_run(runs_db_path, run_id)
    assert run.outcome == "failure"
    assert errors[-1].step_name == "crash"
