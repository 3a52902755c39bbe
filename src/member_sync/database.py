"""
Database module for tracking member records pushed to downstream systems using DuckDB.

Each downstream system gets its own tracking table. A row records the latest
payload observed from the source, its content hash, and the hash and remote
identifier of the last successful push. Comparing the two hashes tells the
reconciliation driver which records need to be synced.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import duckdb

from .hashing import compute_payload_hash, stable_stringify
from .models import SourceRecord

logger = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = "tracked_records"

_TABLE_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")

# Nullable columns introduced after the first schema version. They are added
# to existing tables on open if missing.
_ADDITIVE_COLUMNS: List[Tuple[str, str]] = [
    ("secondary_key", "VARCHAR"),
    ("remote_id", "VARCHAR"),
    ("last_synced_hash", "VARCHAR"),
    ("last_synced_at", "TIMESTAMP"),
    ("last_synced_payload_json", "VARCHAR"),
]

_SELECT_COLUMNS = """
    external_id,
    secondary_key,
    payload_json,
    content_hash,
    remote_id,
    last_synced_hash,
    last_seen_at,
    last_synced_at,
    created_at,
    last_synced_payload_json
"""


@dataclass
class TrackedRecord:
    """
    Represents the tracked sync state of one member in one downstream system.

    Attributes:
        external_id: Stable source-system identifier (unique)
        secondary_key: De-duplication key such as an email address
        payload: Latest field values observed from the source
        content_hash: SHA-256 over the stable serialization of payload
        remote_id: Identifier assigned by the downstream system (None until created)
        last_synced_hash: content_hash at the last successful push (None if never synced)
        last_seen_at: When the record was last observed in a source snapshot
        last_synced_at: When the record was last pushed
        created_at: When the record was first observed
        last_synced_payload: Field values at the last successful push (None if never synced)
    """
    external_id: str
    secondary_key: Optional[str]
    payload: Dict[str, Any]
    content_hash: str
    remote_id: Optional[str] = None
    last_synced_hash: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_synced_payload: Optional[Dict[str, Any]] = None

    @property
    def needs_sync(self) -> bool:
        return self.last_synced_hash is None or self.last_synced_hash != self.content_hash

    def field_changes(self) -> Dict[str, Dict[str, Any]]:
        """
        Compare the current payload with the last pushed one, field by field.

        Returns:
            Mapping of changed field name to {"from": old, "to": new}; a field
            missing on one side is reported as None
        """
        previous = self.last_synced_payload or {}
        current = self.payload or {}
        changes = {}
        for key in sorted(set(previous) | set(current)):
            before = previous.get(key)
            after = current.get(key)
            if stable_stringify(before) != stable_stringify(after):
                changes[key] = {"from": before, "to": after}
        return changes


@dataclass
class ChangePreview:
    """What a reconciliation run would do, computed without persisting anything."""
    needing_sync: List[TrackedRecord] = field(default_factory=list)
    orphans: List[TrackedRecord] = field(default_factory=list)


class TrackingDatabase:
    """
    Manages DuckDB operations for one set of tracked records.

    This class handles connection lifecycle, schema creation and migration,
    and the change-detection queries used by the reconciliation driver. All
    operations fail loudly: storage errors are logged and re-raised.
    """

    def __init__(self, db_path: Path, table_name: str = DEFAULT_TABLE_NAME):
        """
        Initialize database settings.

        Args:
            db_path: Path to the DuckDB database file
            table_name: Tracking table for one downstream system

        Raises:
            ValueError: If table_name is not a plain lowercase identifier
        """
        if not _TABLE_NAME_PATTERN.match(table_name):
            raise ValueError(f"Invalid tracking table name: {table_name!r}")
        self.db_path = db_path
        self.table_name = table_name
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def __enter__(self) -> 'TrackingDatabase':
        """
        Context manager entry: open database connection and create schema.

        Returns:
            Self for use in with statement
        """
        try:
            self.conn = duckdb.connect(str(self.db_path))
            logger.debug(f"Connected to tracking database at {self.db_path} (table {self.table_name})")
            self._create_schema()
            self._migrate_schema()
            return self
        except Exception as e:
            logger.error(f"Failed to initialize tracking database at {self.db_path}: {e}", exc_info=True)
            self.close()
            raise

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit: close database connection."""
        try:
            self.close()
        except Exception as e:
            logger.warning(f"Error while closing tracking database connection: {e}", exc_info=True)

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            raise RuntimeError("Database connection not established")
        return self.conn

    def _create_schema(self) -> None:
        """
        Create the tracking table if it doesn't exist.

        Raises:
            RuntimeError: If database connection is not established
        """
        conn = self._require_connection()

        try:
            conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                external_id VARCHAR NOT NULL PRIMARY KEY,
                secondary_key VARCHAR,
                payload_json VARCHAR NOT NULL,
                content_hash VARCHAR NOT NULL,
                remote_id VARCHAR,
                last_synced_hash VARCHAR,
                last_seen_at TIMESTAMP NOT NULL,
                last_synced_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                last_synced_payload_json VARCHAR
            )
            """)
            logger.debug(f"Tracking table {self.table_name} created or verified")
        except Exception as e:
            logger.error(f"Failed to create tracking table {self.table_name}: {e}", exc_info=True)
            raise

    def _existing_columns(self) -> List[str]:
        conn = self._require_connection()
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
            [self.table_name],
        ).fetchall()
        return [row[0] for row in rows]

    def _migrate_schema(self) -> None:
        """Add columns missing from tables created by older versions."""
        conn = self._require_connection()

        existing = set(self._existing_columns())
        for column, column_type in _ADDITIVE_COLUMNS:
            if column in existing:
                continue
            try:
                conn.execute(f"ALTER TABLE {self.table_name} ADD COLUMN {column} {column_type}")
                logger.info(f"Added column {column} to tracking table {self.table_name}")
            except Exception as e:
                logger.error(f"Failed to add column {column} to {self.table_name}: {e}", exc_info=True)
                raise

    def _write_batch(self, records: Iterable[SourceRecord]) -> int:
        """Upsert records without transaction handling. Returns rows written."""
        conn = self._require_connection()
        now = datetime.now()

        # One row per external id; the last occurrence wins
        unique: Dict[str, SourceRecord] = {}
        for record in records:
            unique[record.external_id] = record

        upsert_sql = f"""
        INSERT INTO {self.table_name} (
            external_id,
            secondary_key,
            payload_json,
            content_hash,
            last_seen_at,
            created_at
        ) VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (external_id) DO UPDATE SET
            secondary_key = excluded.secondary_key,
            payload_json = excluded.payload_json,
            content_hash = excluded.content_hash,
            last_seen_at = excluded.last_seen_at
        """
        for record in unique.values():
            conn.execute(
                upsert_sql,
                [
                    record.external_id,
                    record.secondary_key,
                    stable_stringify(record.payload),
                    compute_payload_hash(record.payload),
                    now,
                    now,
                ]
            )
        return len(unique)

    def upsert_many(self, records: Sequence[SourceRecord]) -> int:
        """
        Insert or update a batch of source records in one transaction.

        Existing rows get their payload, hash, secondary key and last_seen_at
        refreshed. Sync state (remote_id, last_synced_hash) is never touched.
        Either the whole batch is written or nothing is.

        Args:
            records: Records from the current source snapshot

        Returns:
            Number of distinct records written
        """
        conn = self._require_connection()

        conn.begin()
        try:
            written = self._write_batch(records)
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to upsert batch into {self.table_name}, rolled back: {e}", exc_info=True)
            raise

        logger.debug(f"Upserted {written} records into {self.table_name}")
        return written

    def get_needing_sync(self, force: bool = False,
                         only_ids: Optional[Sequence[str]] = None) -> List[TrackedRecord]:
        """
        Get records whose current hash differs from the last synced hash.

        Args:
            force: Return every record regardless of sync state
            only_ids: Restrict the result to these external ids, typically
                the current snapshot; an empty list matches nothing

        Returns:
            Matching records ordered by external_id
        """
        conn = self._require_connection()

        conditions = []
        params: List[Any] = []
        if not force:
            conditions.append("(last_synced_hash IS NULL OR last_synced_hash != content_hash)")
        if only_ids is not None:
            ids = list(dict.fromkeys(only_ids))
            if not ids:
                return []
            conditions.append(f"external_id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            rows = conn.execute(f"""
            SELECT {_SELECT_COLUMNS}
            FROM {self.table_name}
            {where}
            ORDER BY external_id ASC
            """, params).fetchall()
        except Exception as e:
            logger.error(f"Failed to query records needing sync: {e}", exc_info=True)
            raise

        return [self._row_to_record(row) for row in rows]

    def update_sync_state(self, external_id: str, synced_hash: str, remote_id: str,
                          synced_payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Record a successful push for one record.

        Args:
            external_id: Record to update
            synced_hash: content_hash that was pushed
            remote_id: Identifier in the downstream system
            synced_payload: Field values that were pushed, kept for change diffs
        """
        conn = self._require_connection()

        payload_json = stable_stringify(synced_payload) if synced_payload is not None else None
        try:
            conn.execute(
                f"""
                UPDATE {self.table_name}
                SET last_synced_at = ?, last_synced_hash = ?, remote_id = ?, last_synced_payload_json = ?
                WHERE external_id = ?
                """,
                [datetime.now(), synced_hash, str(remote_id), payload_json, external_id]
            )
            logger.debug(f"Updated sync state for {external_id}: remote_id={remote_id}")
        except Exception as e:
            logger.error(f"Failed to update sync state for {external_id}: {e}", exc_info=True)
            raise

    def clear_sync_state(self, external_id: str) -> None:
        """
        Drop the remote link of a record, e.g. after the remote entity disappeared.

        The record then needs a fresh create. last_synced_at keeps the time of
        the last real push.
        """
        conn = self._require_connection()

        try:
            conn.execute(
                f"""
                UPDATE {self.table_name}
                SET last_synced_hash = NULL, remote_id = NULL, last_synced_payload_json = NULL
                WHERE external_id = ?
                """,
                [external_id]
            )
            logger.debug(f"Cleared sync state for {external_id}")
        except Exception as e:
            logger.error(f"Failed to clear sync state for {external_id}: {e}", exc_info=True)
            raise

    def get_not_in_list(self, current_ids: Sequence[str]) -> List[TrackedRecord]:
        """
        Find tracked records absent from the given list of external ids.

        An empty list returns every tracked record; guarding against an
        erroneous empty snapshot is the caller's job.

        Args:
            current_ids: External ids present in the current snapshot

        Returns:
            Orphaned records ordered by external_id
        """
        conn = self._require_connection()

        ids = list(dict.fromkeys(current_ids))
        try:
            if not ids:
                rows = conn.execute(f"""
                SELECT {_SELECT_COLUMNS}
                FROM {self.table_name}
                ORDER BY external_id ASC
                """).fetchall()
            else:
                placeholders = ", ".join("?" for _ in ids)
                rows = conn.execute(
                    f"""
                    SELECT {_SELECT_COLUMNS}
                    FROM {self.table_name}
                    WHERE external_id NOT IN ({placeholders})
                    ORDER BY external_id ASC
                    """,
                    ids
                ).fetchall()
        except Exception as e:
            logger.error(f"Failed to query orphaned records: {e}", exc_info=True)
            raise

        return [self._row_to_record(row) for row in rows]

    def delete(self, external_id: str) -> None:
        """Remove a record from the tracking table."""
        conn = self._require_connection()

        try:
            conn.execute(f"DELETE FROM {self.table_name} WHERE external_id = ?", [external_id])
            logger.debug(f"Deleted tracked record {external_id}")
        except Exception as e:
            logger.error(f"Failed to delete tracked record {external_id}: {e}", exc_info=True)
            raise

    def get_record(self, external_id: str) -> Optional[TrackedRecord]:
        """
        Retrieve a record by its external id.

        Returns:
            The matching record if found, None otherwise
        """
        conn = self._require_connection()

        row = conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM {self.table_name} WHERE external_id = ?",
            [external_id]
        ).fetchone()
        if row is None:
            logger.debug(f"No tracked record found for {external_id}")
            return None
        return self._row_to_record(row)

    def get_all(self) -> List[TrackedRecord]:
        conn = self._require_connection()
        rows = conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM {self.table_name} ORDER BY external_id ASC"
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        conn = self._require_connection()
        return conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()[0]

    def preview_changes(self, records: Sequence[SourceRecord], force: bool = False) -> ChangePreview:
        """
        Compute what a run over this snapshot would sync and delete.

        The snapshot is written inside a transaction that is always rolled
        back, so the tracking table is left exactly as it was.

        Args:
            records: Current source snapshot
            force: Treat every record as needing sync

        Returns:
            ChangePreview with records needing sync and orphans
        """
        conn = self._require_connection()

        current_ids = [record.external_id for record in records]
        conn.begin()
        try:
            self._write_batch(records)
            preview = ChangePreview(
                needing_sync=self.get_needing_sync(force, only_ids=current_ids),
                orphans=self.get_not_in_list(current_ids),
            )
        finally:
            conn.rollback()
        return preview

    @staticmethod
    def _row_to_record(row: tuple) -> TrackedRecord:
        return TrackedRecord(
            external_id=row[0],
            secondary_key=row[1],
            payload=json.loads(row[2]),
            content_hash=row[3],
            remote_id=row[4],
            last_synced_hash=row[5],
            last_seen_at=row[6],
            last_synced_at=row[7],
            created_at=row[8],
            last_synced_payload=json.loads(row[9]) if row[9] is not None else None,
        )

    def close(self) -> None:
        """
        Close the database connection.

        This method can be called explicitly or will be called automatically
        when using the context manager.
        """
        if self.conn is not None:
            try:
                self.conn.close()
                logger.debug("Tracking database connection closed")
            except Exception as e:
                logger.warning(f"Error closing tracking database connection: {e}", exc_info=True)
            finally:
                self.conn = None
