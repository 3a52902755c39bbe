"""
One sync pipeline invocation for a single downstream system.

Fetches the snapshot, opens the tracking database, runs the reconciliation
driver, and records everything in the run database. Failures are reported
through the returned PipelineResult; nothing is raised to the caller.
"""

import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from ..database import TrackingDatabase
from .client import RemoteSyncClient
from .config import RemoteSystemConfig, SyncConfig
from .interfaces import SourceProvider
from .logging_config import PerformanceTimer, log_batch_metrics
from .reconciler import BodyBuilder, Reconciler, ReconcileOptions, SyncResult
from .run_tracker import CrashSupervisor, RunOutcome, RunTracker, StepOutcome

FETCH_STEP = "fetch-snapshot"


@dataclass
class PipelineResult:
    """Outcome of one pipeline invocation."""
    success: bool
    outcome: RunOutcome
    result: Optional[SyncResult] = None
    run_id: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "run_id": self.run_id,
            "errors": self.errors,
            "result": self.result.to_dict() if self.result else None,
        }


def _log_summary(logger: logging.Logger, system: str, result: SyncResult, duration_ms: float) -> None:
    divider = "=" * 40
    logger.info(divider)
    logger.info(f"{system.upper()} SYNC SUMMARY{' (DRY RUN)' if result.dry_run else ''}")
    logger.info(divider)
    logger.info(f"Completed: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Duration: {duration_ms / 1000:.1f}s")
    logger.info(f"Total records: {result.total}")
    if result.dry_run:
        logger.info(f"Would create: {result.would_create}")
        logger.info(f"Would update: {result.would_update}")
        logger.info(f"Would delete: {result.would_delete}")
    else:
        logger.info(f"Synced: {result.synced} (created {result.created}, updated {result.updated})")
        logger.info(f"Deleted: {result.deleted}")
    logger.info(f"Skipped (unchanged): {result.skipped}")
    if result.suspect_snapshot:
        logger.warning("Snapshot looks incomplete, orphan sweep was skipped")
    if result.errors:
        logger.warning(f"Errors: {len(result.errors)}")
    logger.info(divider)


def run_sync_pipeline(provider: SourceProvider,
                      system: RemoteSystemConfig,
                      config: SyncConfig,
                      options: Optional[ReconcileOptions] = None,
                      session: Optional[requests.Session] = None,
                      sleep: Callable[[float], None] = time.sleep,
                      logger: Optional[logging.Logger] = None,
                      tracker: Optional[RunTracker] = None,
                      body_builder: Optional[BodyBuilder] = None,
                      show_progress: bool = False) -> PipelineResult:
    """
    Sync one downstream system with the provider's snapshot.

    Args:
        provider: Source of the authoritative snapshot
        system: Downstream system settings
        config: Storage, retry and delay settings
        options: Reconciliation switches
        session: HTTP session for the remote client
        sleep: Function used for retry backoff and inter-record delays
        logger: Logger for progress output
        tracker: Run tracker; one backed by config.runs_db_path is created if omitted
        body_builder: Maps tracked records to request bodies
        show_progress: Display a progress bar

    Returns:
        PipelineResult; success is True only for a clean run
    """
    logger = logger or logging.getLogger(__name__)
    options = options or ReconcileOptions(min_snapshot_ratio=config.min_snapshot_ratio)
    Path(config.data_dir).mkdir(parents=True, exist_ok=True)

    tracker = tracker or RunTracker(system.name, config.runs_db_path, logger)
    errors: List[str] = []

    with CrashSupervisor(tracker):
        run_id = tracker.start_run()

        missing = system.check_credentials()
        if missing:
            message = f"{system.name} credentials not configured, required: {', '.join(missing)}"
            logger.error(message)
            tracker.record_error("check-credentials", message)
            tracker.end_run(RunOutcome.FAILURE, {"error": message})
            return PipelineResult(False, RunOutcome.FAILURE, run_id=run_id, errors=[message])

        # Fetch snapshot
        step_id = tracker.start_step(FETCH_STEP)
        try:
            with PerformanceTimer(logger, "Fetch snapshot", system=system.name):
                snapshot = provider.fetch_snapshot()
        except Exception as e:
            message = f"Snapshot from {provider.name} failed: {e}"
            logger.error(message, exc_info=True)
            tracker.end_step(step_id, StepOutcome.FAILURE)
            tracker.record_error(FETCH_STEP, str(e), step_id, stack=traceback.format_exc())
            tracker.end_run(RunOutcome.FAILURE, {"error": message})
            return PipelineResult(False, RunOutcome.FAILURE, run_id=run_id, errors=[message])
        tracker.end_step(step_id, StepOutcome.SUCCESS, detail={"records": len(snapshot), "source": provider.name})
        logger.info(f"Fetched {len(snapshot)} records from {provider.name}")

        # Reconcile
        sync_step = f"{system.name}-sync"
        step_id = tracker.start_step(sync_step)
        start = time.time()
        try:
            with TrackingDatabase(config.tracking_db_path, system.tracking_table) as store:
                client = RemoteSyncClient(
                    system,
                    session=session,
                    timeout=config.request_timeout_seconds,
                    max_retries=config.max_retries,
                    sleep=sleep,
                    logger=logger,
                )
                reconciler = Reconciler(
                    store,
                    client,
                    logger=logger,
                    record_delay_seconds=config.record_delay_seconds,
                    sleep=sleep,
                    body_builder=body_builder,
                    show_progress=show_progress,
                )
                with PerformanceTimer(logger, f"Reconcile {system.name}", system=system.name):
                    result = reconciler.run(snapshot, options)
        except Exception as e:
            message = f"{system.name} sync failed: {e}"
            logger.error(message, exc_info=True)
            tracker.end_step(step_id, StepOutcome.FAILURE)
            tracker.record_error(sync_step, str(e), step_id, stack=traceback.format_exc())
            tracker.end_run(RunOutcome.FAILURE, {"error": message})
            return PipelineResult(False, RunOutcome.FAILURE, run_id=run_id, errors=[message])

        duration_ms = (time.time() - start) * 1000
        tracker.end_step(
            step_id,
            StepOutcome.SUCCESS,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            failed=len(result.errors),
            detail={
                "deleted": result.deleted,
                "dry_run": result.dry_run,
                "suspect_snapshot": result.suspect_snapshot,
            },
        )
        tracker.record_errors(sync_step, step_id, result.errors)
        errors.extend(f"{error.external_id}: {error.message}" for error in result.errors)

        log_batch_metrics(
            logger, result.total, duration_ms, result.synced, len(result.errors), system=system.name
        )
        _log_summary(logger, system.name, result, duration_ms)

        outcome = RunOutcome.SUCCESS if result.success else RunOutcome.PARTIAL
        tracker.end_run(outcome, result.to_dict())

    return PipelineResult(outcome == RunOutcome.SUCCESS, outcome, result, run_id, errors)
