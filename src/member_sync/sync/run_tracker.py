"""
Run tracking for sync pipelines.

Records every pipeline run, its steps, and individual errors in a DuckDB
database so operators can see what happened. Tracking is a side channel:
every recording method swallows storage failures (logging a warning), so a
broken tracking database never breaks a sync.
"""

import json
import logging
import sys
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import duckdb

from .interfaces import SyncLogger

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_STACK_LENGTH = 4000


class RunOutcome(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class StepOutcome(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class RunRecord:
    """One pipeline run as stored in the runs table."""
    id: int
    pipeline: str
    started_at: datetime
    finished_at: Optional[datetime]
    duration_ms: Optional[int]
    outcome: str
    total_created: int
    total_updated: int
    total_skipped: int
    total_failed: int
    summary: Optional[Dict[str, Any]]


@dataclass
class StepRecord:
    """One step of a run."""
    id: int
    run_id: int
    step_name: str
    started_at: datetime
    finished_at: Optional[datetime]
    duration_ms: Optional[int]
    outcome: str
    created_count: int
    updated_count: int
    skipped_count: int
    failed_count: int
    detail: Optional[Dict[str, Any]]


@dataclass
class RunErrorRecord:
    """An error recorded against a run and optionally one of its steps."""
    id: int
    run_id: int
    run_step_id: Optional[int]
    step_name: str
    member_identifier: Optional[str]
    error_message: str
    error_stack: Optional[str]
    created_at: datetime


def _duration_ms(started_at: Optional[datetime], finished_at: datetime) -> int:
    if started_at is None:
        return 0
    return int((finished_at - started_at).total_seconds() * 1000)


def _load_json(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(value) if value else None


class RunDatabase:
    """
    Manages the DuckDB tables holding run, step and error records.

    Unlike the tracking database this class does no error handling of its
    own; RunTracker decides which failures to tolerate.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def __enter__(self) -> 'RunDatabase':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self) -> 'RunDatabase':
        """Connect and create the schema if needed."""
        if self.conn is None:
            self.conn = duckdb.connect(str(self.db_path))
            logger.debug(f"Connected to run database at {self.db_path}")
            try:
                self._create_schema()
            except Exception:
                self.close()
                raise
        return self

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            raise RuntimeError("Database connection not established")
        return self.conn

    def _create_schema(self) -> None:
        conn = self._require_connection()

        conn.execute("CREATE SEQUENCE IF NOT EXISTS runs_id_seq START 1")
        conn.execute("CREATE SEQUENCE IF NOT EXISTS run_steps_id_seq START 1")
        conn.execute("CREATE SEQUENCE IF NOT EXISTS run_errors_id_seq START 1")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS runs (
            id BIGINT PRIMARY KEY DEFAULT nextval('runs_id_seq'),
            pipeline VARCHAR NOT NULL,
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP,
            duration_ms BIGINT,
            outcome VARCHAR NOT NULL,
            total_created INTEGER DEFAULT 0,
            total_updated INTEGER DEFAULT 0,
            total_skipped INTEGER DEFAULT 0,
            total_failed INTEGER DEFAULT 0,
            summary_json VARCHAR
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS run_steps (
            id BIGINT PRIMARY KEY DEFAULT nextval('run_steps_id_seq'),
            run_id BIGINT NOT NULL,
            step_name VARCHAR NOT NULL,
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP,
            duration_ms BIGINT,
            outcome VARCHAR NOT NULL,
            created_count INTEGER DEFAULT 0,
            updated_count INTEGER DEFAULT 0,
            skipped_count INTEGER DEFAULT 0,
            failed_count INTEGER DEFAULT 0,
            detail_json VARCHAR
        )
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS run_errors (
            id BIGINT PRIMARY KEY DEFAULT nextval('run_errors_id_seq'),
            run_id BIGINT NOT NULL,
            run_step_id BIGINT,
            step_name VARCHAR NOT NULL,
            member_identifier VARCHAR,
            error_message VARCHAR NOT NULL,
            error_stack VARCHAR,
            created_at TIMESTAMP NOT NULL
        )
        """)

    def insert_run(self, pipeline: str, started_at: datetime) -> int:
        conn = self._require_connection()
        return conn.execute(
            "INSERT INTO runs (pipeline, started_at, outcome) VALUES (?, ?, ?) RETURNING id",
            [pipeline, started_at, RunOutcome.RUNNING.value]
        ).fetchone()[0]

    def insert_step(self, run_id: int, step_name: str, started_at: datetime) -> int:
        conn = self._require_connection()
        return conn.execute(
            "INSERT INTO run_steps (run_id, step_name, started_at, outcome) VALUES (?, ?, ?, ?) RETURNING id",
            [run_id, step_name, started_at, StepOutcome.PENDING.value]
        ).fetchone()[0]

    def finish_step(self, step_id: int, finished_at: datetime, outcome: str, counts: Tuple[int, int, int, int],
                    detail_json: Optional[str]) -> None:
        conn = self._require_connection()
        row = conn.execute("SELECT started_at FROM run_steps WHERE id = ?", [step_id]).fetchone()
        duration = _duration_ms(row[0] if row else None, finished_at)
        conn.execute(
            """
            UPDATE run_steps
            SET finished_at = ?, duration_ms = ?, outcome = ?,
                created_count = ?, updated_count = ?, skipped_count = ?,
                failed_count = ?, detail_json = ?
            WHERE id = ?
            """,
            [finished_at, duration, outcome, *counts, detail_json, step_id]
        )

    def insert_error(self, run_id: int, step_id: Optional[int], step_name: str,
                     member_identifier: Optional[str], message: str, stack: Optional[str],
                     created_at: datetime) -> int:
        conn = self._require_connection()
        return conn.execute(
            """
            INSERT INTO run_errors
                (run_id, run_step_id, step_name, member_identifier, error_message, error_stack, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [run_id, step_id, step_name, member_identifier, message, stack, created_at]
        ).fetchone()[0]

    def sum_steps(self, run_id: int) -> Tuple[int, int, int, int]:
        conn = self._require_connection()
        row = conn.execute(
            """
            SELECT
                COALESCE(SUM(created_count), 0),
                COALESCE(SUM(updated_count), 0),
                COALESCE(SUM(skipped_count), 0),
                COALESCE(SUM(failed_count), 0)
            FROM run_steps
            WHERE run_id = ?
            """,
            [run_id]
        ).fetchone()
        return tuple(int(value) for value in row)

    def finish_run(self, run_id: int, finished_at: datetime, outcome: str,
                   summary_json: Optional[str]) -> None:
        conn = self._require_connection()
        row = conn.execute("SELECT started_at FROM runs WHERE id = ?", [run_id]).fetchone()
        duration = _duration_ms(row[0] if row else None, finished_at)
        totals = self.sum_steps(run_id)
        conn.execute(
            """
            UPDATE runs
            SET finished_at = ?, duration_ms = ?, outcome = ?,
                total_created = ?, total_updated = ?, total_skipped = ?,
                total_failed = ?, summary_json = ?
            WHERE id = ?
            """,
            [finished_at, duration, outcome, *totals, summary_json, run_id]
        )

    def list_runs(self, limit: int = 20, pipeline: Optional[str] = None) -> List[RunRecord]:
        """Most recent runs first, optionally for one pipeline only."""
        conn = self._require_connection()
        where = "WHERE pipeline = ?" if pipeline else ""
        params: List[Any] = [pipeline] if pipeline else []
        rows = conn.execute(
            f"""
            SELECT id, pipeline, started_at, finished_at, duration_ms, outcome,
                   total_created, total_updated, total_skipped, total_failed, summary_json
            FROM runs
            {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            params + [limit]
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        conn = self._require_connection()
        row = conn.execute(
            """
            SELECT id, pipeline, started_at, finished_at, duration_ms, outcome,
                   total_created, total_updated, total_skipped, total_failed, summary_json
            FROM runs WHERE id = ?
            """,
            [run_id]
        ).fetchone()
        return self._row_to_run(row) if row else None

    def get_steps(self, run_id: int) -> List[StepRecord]:
        conn = self._require_connection()
        rows = conn.execute(
            """
            SELECT id, run_id, step_name, started_at, finished_at, duration_ms, outcome,
                   created_count, updated_count, skipped_count, failed_count, detail_json
            FROM run_steps WHERE run_id = ? ORDER BY id ASC
            """,
            [run_id]
        ).fetchall()
        return [
            StepRecord(*row[:11], detail=_load_json(row[11]))
            for row in rows
        ]

    def get_errors(self, run_id: int) -> List[RunErrorRecord]:
        conn = self._require_connection()
        rows = conn.execute(
            """
            SELECT id, run_id, run_step_id, step_name, member_identifier, error_message, error_stack, created_at
            FROM run_errors WHERE run_id = ? ORDER BY id ASC
            """,
            [run_id]
        ).fetchall()
        return [RunErrorRecord(*row) for row in rows]

    @staticmethod
    def _row_to_run(row: tuple) -> RunRecord:
        return RunRecord(*row[:10], summary=_load_json(row[10]))

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
                logger.debug("Run database connection closed")
            finally:
                self.conn = None


def _coerce_run_outcome(outcome: Union[RunOutcome, bool, str]) -> RunOutcome:
    if isinstance(outcome, RunOutcome):
        return outcome
    if isinstance(outcome, bool):
        return RunOutcome.SUCCESS if outcome else RunOutcome.FAILURE
    return RunOutcome(outcome)


def _coerce_step_outcome(outcome: Union[StepOutcome, bool, str]) -> StepOutcome:
    if isinstance(outcome, StepOutcome):
        return outcome
    if isinstance(outcome, bool):
        return StepOutcome.SUCCESS if outcome else StepOutcome.FAILURE
    return StepOutcome(outcome)


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else value


def _format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _member_identifier(error: Any) -> Optional[str]:
    for attr in ("external_id", "secondary_key", "email"):
        value = error.get(attr) if isinstance(error, dict) else getattr(error, attr, None)
        if value:
            return str(value)
    return None


class RunTracker:
    """
    Track one pipeline execution in the run database.

    All public methods are wrapped so that tracking failures never reach
    the pipeline: they are logged and the method returns None.
    """

    def __init__(self, pipeline: str, db_path: Path, logger: Optional[SyncLogger] = None):
        self.pipeline = pipeline
        self.logger = logger or logging.getLogger(__name__)
        self.run_id: Optional[int] = None
        self.finished = False
        self.db: Optional[RunDatabase] = None

        try:
            self.db = RunDatabase(db_path).open()
        except Exception as e:
            self.logger.warning(f"[run-tracker] Failed to open run database {db_path}: {e}")

    @property
    def is_active(self) -> bool:
        return self.db is not None and self.run_id is not None and not self.finished

    def _safe(self, fn: Callable[[], Any], method_name: str) -> Any:
        """Execute fn, converting any failure into a logged warning."""
        if self.db is None:
            return None
        try:
            return fn()
        except Exception as e:
            self.logger.warning(f"[run-tracker] Error in {method_name}: {e}")
            return None

    def start_run(self) -> Optional[int]:
        """Start a new run. Returns the run id, or None if tracking is unavailable."""

        def start():
            self.run_id = self.db.insert_run(self.pipeline, datetime.now())
            self.finished = False
            return self.run_id

        return self._safe(start, "start_run")

    def start_step(self, step_name: str) -> Optional[int]:
        """Start a step within the current run."""
        if self.run_id is None:
            return None
        return self._safe(lambda: self.db.insert_step(self.run_id, step_name, datetime.now()), "start_step")

    def end_step(self, step_id: Optional[int], outcome: Union[StepOutcome, bool, str] = StepOutcome.SUCCESS,
                 created: int = 0, updated: int = 0, skipped: int = 0, failed: int = 0,
                 detail: Optional[Dict[str, Any]] = None) -> None:
        """End a step and record its counters."""
        if step_id is None:
            return

        def finish():
            detail_json = json.dumps(detail, default=str) if detail else None
            self.db.finish_step(
                step_id, datetime.now(), _coerce_step_outcome(outcome).value,
                (created, updated, skipped, failed), detail_json
            )

        self._safe(finish, "end_step")

    def record_error(self, step_name: str, message: Optional[str], step_id: Optional[int] = None,
                     member_identifier: Optional[str] = None, stack: Optional[str] = None) -> Optional[int]:
        """Record a single error against the current run."""
        if self.run_id is None:
            return None
        return self._safe(
            lambda: self.db.insert_error(
                self.run_id,
                step_id,
                step_name,
                member_identifier,
                _truncate(str(message) if message else "Unknown error", MAX_MESSAGE_LENGTH),
                _truncate(stack, MAX_STACK_LENGTH),
                datetime.now(),
            ),
            "record_error"
        )

    def record_errors(self, step_name: str, step_id: Optional[int],
                      errors: Union[Sequence[Any], int, None]) -> None:
        """
        Record the errors of a step.

        Args:
            step_name: Step the errors belong to
            step_id: Step id from start_step
            errors: Error entries (objects or dicts with a message) or a bare error count
        """
        if not errors:
            return

        if isinstance(errors, int):
            self.record_error(step_name, f"Step reported {errors} error(s)", step_id)
            return

        for error in errors:
            if isinstance(error, dict):
                message = error.get("message") or error.get("error")
                stack = error.get("stack")
            else:
                message = getattr(error, "message", None) or str(error)
                stack = getattr(error, "stack", None)
            self.record_error(step_name, message, step_id, _member_identifier(error), stack)

    def end_run(self, outcome: Union[RunOutcome, bool, str],
                stats: Optional[Dict[str, Any]] = None) -> None:
        """Finish the run, aggregating totals from its steps, and close the database."""
        if self.run_id is None:
            self.close()
            return

        def finish():
            summary = json.dumps(stats, default=str) if stats is not None else None
            self.db.finish_run(self.run_id, datetime.now(), _coerce_run_outcome(outcome).value, summary)
            self.finished = True

        self._safe(finish, "end_run")
        self.close()

    def finalize_crash(self, error: BaseException) -> None:
        """Mark the active run as failed after an unexpected crash."""
        if not self.is_active:
            return

        def finalize():
            self.db.insert_error(
                self.run_id,
                None,
                "crash",
                None,
                _truncate(str(error) or type(error).__name__, MAX_MESSAGE_LENGTH),
                _truncate(_format_stack(error), MAX_STACK_LENGTH),
                datetime.now(),
            )
            self.db.finish_run(
                self.run_id, datetime.now(), RunOutcome.FAILURE.value,
                json.dumps({"crash": True, "error": f"{type(error).__name__}: {error}"})
            )
            self.finished = True

        self._safe(finalize, "finalize_crash")
        self.close()

    def close(self) -> None:
        """Close the run database (idempotent)."""
        if self.db is not None:
            try:
                self.db.close()
            except Exception as e:
                self.logger.warning(f"[run-tracker] Error closing run database: {e}")
            finally:
                self.db = None


class CrashSupervisor:
    """
    Owns finalize-on-crash for one tracker.

    Installing it chains ``sys.excepthook`` and ``threading.excepthook`` so an
    uncaught exception marks the active run as failed before the process
    exits. Used as a context manager it also finalizes the run when an
    exception escapes the block, and restores the hooks on exit.
    """

    def __init__(self, tracker: RunTracker):
        self.tracker = tracker
        self.installed = False
        self._previous_excepthook = None
        self._previous_threading_excepthook = None

    def install(self) -> 'CrashSupervisor':
        if self.installed:
            return self
        self._previous_excepthook = sys.excepthook
        self._previous_threading_excepthook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._threading_excepthook
        self.installed = True
        return self

    def uninstall(self) -> None:
        if not self.installed:
            return
        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook
        if threading.excepthook == self._threading_excepthook:
            threading.excepthook = self._previous_threading_excepthook
        self.installed = False

    def finalize(self, error: BaseException) -> None:
        if self.tracker.is_active:
            self.tracker.logger.error(f"[run-tracker] Uncaught {type(error).__name__}, marking run as failed: {error}")
            self.tracker.finalize_crash(error)

    def _excepthook(self, exc_type, exc_value, exc_tb):
        self.finalize(exc_value)
        self._previous_excepthook(exc_type, exc_value, exc_tb)

    def _threading_excepthook(self, args):
        if args.exc_value is not None:
            self.finalize(args.exc_value)
        self._previous_threading_excepthook(args)

    def __enter__(self) -> 'CrashSupervisor':
        return self.install()

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_val is not None:
                self.finalize(exc_val)
        finally:
            self.uninstall()
        return False
