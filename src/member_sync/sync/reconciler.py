"""
Reconciliation driver: pushes changed member records to a downstream system.

A run upserts the source snapshot into the tracking table, pushes every record
whose content hash differs from the last pushed hash, and sweeps orphans
(tracked records missing from the snapshot). Records are processed strictly
one at a time with a fixed pause between them. A failing record is recorded
and skipped; it never aborts the run.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import duckdb
from tqdm import tqdm

from ..database import TrackedRecord, TrackingDatabase
from ..models import SourceRecord
from .client import RemoteSyncClient
from .exceptions import LinkingRequiredError, RemoteError, RemoteNotFoundError
from .interfaces import NullSyncLogger, SyncLogger

BodyBuilder = Callable[[TrackedRecord, bool], Dict[str, Any]]


class SyncAction(Enum):
    """What happened to a single record."""
    CREATE = "create"
    UPDATE = "update"
    LINK = "link"
    DELETE = "delete"


@dataclass
class ReconcileOptions:
    """Per-run switches for the reconciliation driver."""
    force: bool = False
    dry_run: bool = False
    sweep_orphans: bool = True
    allow_empty_snapshot: bool = False
    min_snapshot_ratio: float = 0.0


@dataclass
class SyncErrorEntry:
    """A per-record failure collected during a run."""
    external_id: str
    message: str
    secondary_key: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "secondary_key": self.secondary_key,
            "message": self.message,
            "error_code": self.error_code,
        }


@dataclass
class SyncResult:
    """Totals of one reconciliation run."""
    total: int = 0
    synced: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: List[SyncErrorEntry] = field(default_factory=list)
    dry_run: bool = False
    suspect_snapshot: bool = False
    sweep_skipped: bool = False
    would_create: int = 0
    would_update: int = 0
    would_delete: int = 0

    @property
    def success(self) -> bool:
        return not self.errors and not self.suspect_snapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "synced": self.synced,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "errors": [error.to_dict() for error in self.errors],
            "dry_run": self.dry_run,
            "suspect_snapshot": self.suspect_snapshot,
            "sweep_skipped": self.sweep_skipped,
            "would_create": self.would_create,
            "would_update": self.would_update,
            "would_delete": self.would_delete,
        }


def default_body_builder(search_param: str) -> BodyBuilder:
    """Build request bodies from the payload, adding the secondary key on create."""

    def build(record: TrackedRecord, creating: bool) -> Dict[str, Any]:
        body = dict(record.payload)
        if creating and record.secondary_key and search_param not in body:
            body[search_param] = record.secondary_key
        return body

    return build


class Reconciler:
    """Drives one downstream system towards the source snapshot."""

    def __init__(self,
                 store: TrackingDatabase,
                 client: RemoteSyncClient,
                 logger: Optional[SyncLogger] = None,
                 record_delay_seconds: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep,
                 body_builder: Optional[BodyBuilder] = None,
                 show_progress: bool = False):
        """
        Initialize the driver.

        Args:
            store: Open tracking database for this system
            client: Client for the downstream system
            logger: Logger for per-record progress
            record_delay_seconds: Pause between two consecutive records
            sleep: Function used for the pause
            body_builder: Maps a tracked record to a request body
            show_progress: Display a tqdm progress bar
        """
        self.store = store
        self.client = client
        self.logger = logger or NullSyncLogger()
        self.record_delay_seconds = record_delay_seconds
        self._sleep = sleep
        self.body_builder = body_builder or default_body_builder(client.system.search_param)
        self.show_progress = show_progress

    @property
    def system(self) -> str:
        return self.client.system.name

    def run(self, snapshot: Sequence[SourceRecord],
            options: Optional[ReconcileOptions] = None) -> SyncResult:
        """
        Reconcile the downstream system with a full source snapshot.

        Args:
            snapshot: Every record the source currently considers active
            options: Run switches (force, dry run, sweep and guard settings)

        Returns:
            SyncResult with totals and collected per-record errors

        Raises:
            duckdb.Error: If the tracking table cannot be read or written
        """
        options = options or ReconcileOptions()
        current_ids = list(dict.fromkeys(record.external_id for record in snapshot))
        result = SyncResult(total=len(current_ids), dry_run=options.dry_run)

        tracked_before = self.store.count()
        sweep = options.sweep_orphans
        if sweep and self._is_suspect(len(current_ids), tracked_before, options):
            self.logger.warning(
                f"Snapshot holds {len(current_ids)} records but {tracked_before} are tracked; "
                f"skipping orphan sweep for {self.system}",
                extra={"system": self.system}
            )
            result.suspect_snapshot = True
            result.sweep_skipped = True
            sweep = False
        elif not sweep:
            result.sweep_skipped = True

        if options.dry_run:
            return self._preview(snapshot, options, sweep, result)

        self.store.upsert_many(snapshot)
        needs_sync = self.store.get_needing_sync(options.force, only_ids=current_ids)
        result.skipped = result.total - len(needs_sync)
        self.logger.info(f"{len(needs_sync)} of {result.total} records need sync to {self.system}")

        iterator = tqdm(needs_sync, desc=f"Syncing {self.system}", unit="record", ncols=80,
                        disable=not self.show_progress)
        for index, record in enumerate(iterator):
            if index > 0 and self.record_delay_seconds > 0:
                self._sleep(self.record_delay_seconds)

            try:
                action = self.sync_record(record)
            except duckdb.Error:
                raise
            except Exception as e:
                self._record_error(result, record, e)
                continue

            if action == SyncAction.CREATE:
                result.created += 1
            else:
                result.updated += 1

        result.synced = result.created + result.updated

        if sweep:
            self.sweep_orphans(current_ids, result)

        return result

    def _is_suspect(self, snapshot_size: int, tracked: int, options: ReconcileOptions) -> bool:
        if options.allow_empty_snapshot or tracked == 0:
            return False
        if snapshot_size == 0:
            return True
        return snapshot_size < options.min_snapshot_ratio * tracked

    def _preview(self, snapshot: Sequence[SourceRecord], options: ReconcileOptions,
                 sweep: bool, result: SyncResult) -> SyncResult:
        """Log what a run would do without calling the remote system or persisting anything."""
        preview = self.store.preview_changes(snapshot, options.force)
        result.skipped = result.total - len(preview.needing_sync)

        for record in preview.needing_sync:
            if record.remote_id:
                result.would_update += 1
                self.logger.info(f"[dry-run] UPDATE {record.external_id} (remote {record.remote_id})",
                                 extra={"external_id": record.external_id, "action": "update"})
            else:
                result.would_create += 1
                self.logger.info(f"[dry-run] CREATE {record.external_id} ({record.secondary_key or 'no secondary key'})",
                                 extra={"external_id": record.external_id, "action": "create"})

        if sweep:
            for record in preview.orphans:
                result.would_delete += 1
                target = f"remote {record.remote_id}" if record.remote_id else "local only"
                self.logger.info(f"[dry-run] DELETE {record.external_id} ({target})",
                                 extra={"external_id": record.external_id, "action": "delete"})

        return result

    def sync_record(self, record: TrackedRecord) -> SyncAction:
        """
        Push one record and link the remote entity in the tracking table.

        Args:
            record: Tracked record needing sync

        Returns:
            The action taken (CREATE, UPDATE or LINK)

        Raises:
            LinkingRequiredError: If a create conflicts but no entity can be found
            SyncError: For any other remote failure
        """
        if record.remote_id:
            try:
                self.client.update_entity(record.remote_id, self.body_builder(record, False))
                self._link(record, record.remote_id)
                self.logger.debug(f"Updated {record.external_id}",
                                  extra={"external_id": record.external_id, "remote_id": record.remote_id,
                                         "action": "update"})
                return SyncAction.UPDATE
            except RemoteNotFoundError:
                self.logger.info(f"Remote entity {record.remote_id} for {record.external_id} is gone, recreating")
                self.store.clear_sync_state(record.external_id)

        remote_id = self.client.find_by_secondary_key(record.secondary_key)
        if remote_id:
            return self._update_and_link(record, remote_id)

        try:
            remote_id = self.client.create_entity(self.body_builder(record, True))
        except RemoteError as e:
            if not e.is_conflict:
                raise
            self.logger.info(f"Create of {record.external_id} conflicted ({e.status}), looking up existing entity")
            remote_id = self.client.find_by_secondary_key(record.secondary_key)
            if not remote_id:
                raise LinkingRequiredError(record.external_id, record.secondary_key, e.status)
            return self._update_and_link(record, remote_id)

        self._link(record, remote_id)
        self.logger.debug(f"Created {record.external_id}",
                          extra={"external_id": record.external_id, "remote_id": remote_id, "action": "create"})
        return SyncAction.CREATE

    def _update_and_link(self, record: TrackedRecord, remote_id: str) -> SyncAction:
        self.client.update_entity(remote_id, self.body_builder(record, False))
        self._link(record, remote_id)
        self.logger.debug(f"Linked {record.external_id} to existing entity",
                          extra={"external_id": record.external_id, "remote_id": remote_id, "action": "link"})
        return SyncAction.LINK

    def _link(self, record: TrackedRecord, remote_id: str) -> None:
        self.store.update_sync_state(record.external_id, record.content_hash, remote_id, record.payload)

    def _record_error(self, result: SyncResult, record: TrackedRecord, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error)
        result.errors.append(SyncErrorEntry(
            external_id=record.external_id,
            message=message,
            secondary_key=record.secondary_key,
            error_code=getattr(error, "error_code", type(error).__name__),
        ))
        self.logger.error(f"Failed to sync {record.external_id}: {message}",
                          extra={"external_id": record.external_id, "system": self.system})

    def sweep_orphans(self, current_ids: Sequence[str], result: SyncResult) -> None:
        """
        Delete tracked records that vanished from the snapshot.

        Records never pushed are dropped locally. Pushed records are deleted
        remotely first; a 404 counts as already deleted. Any other failure
        keeps the local record so the deletion is retried on the next run.

        Args:
            current_ids: External ids of the current snapshot
            result: Result to update with deletions and errors
        """
        orphans = self.store.get_not_in_list(current_ids)
        if orphans:
            self.logger.info(f"Found {len(orphans)} orphaned records in {self.system}")

        for record in orphans:
            if not record.remote_id:
                self.store.delete(record.external_id)
                continue

            try:
                self.client.delete_entity(record.remote_id)
            except RemoteNotFoundError:
                self.logger.debug(f"Remote entity {record.remote_id} already deleted")
            except Exception as e:
                self._record_error(result, record, e)
                continue

            self.store.delete(record.external_id)
            result.deleted += 1
            self.logger.info(f"Deleted orphan {record.external_id}",
                             extra={"external_id": record.external_id, "remote_id": record.remote_id,
                                    "action": "delete"})
