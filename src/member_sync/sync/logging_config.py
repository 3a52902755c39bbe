"""Logging configuration for reconciliation runs."""

import logging
import os
import sys
import time
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "member_sync"

_SYNC_FIELDS = ['system', 'external_id', 'remote_id', 'action']


class SyncEventFormatter(logging.Formatter):
    """Custom formatter for synchronization events."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with sync-specific information."""
        sync_fields = []
        for field in _SYNC_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                sync_fields.append(f"{field}={value}")

        base_msg = super().format(record)

        if sync_fields:
            return f"{base_msg} [{', '.join(sync_fields)}]"

        return base_msg


def default_log_path(log_dir: Union[str, Path], system: str, day: Optional[date] = None) -> Path:
    """Return the daily log file for a system, e.g. logs/sync-freescout-2024-05-01.log."""
    day = day or date.today()
    return Path(log_dir) / f"sync-{system}-{day.isoformat()}.log"


def setup_sync_logging(log_level: str = "INFO",
                       log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Set up logging for synchronization components.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file that log lines are appended to

    Returns:
        Configured logger for sync operations
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    formatter = SyncEventFormatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Replace the console handler so it always writes to the current stdout
    for old in [h for h in logger.handlers if getattr(h, "_member_sync_console", False)]:
        logger.removeHandler(old)
    handler = logging.StreamHandler(sys.stdout)
    handler._member_sync_console = True
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if log_file is not None:
        log_path = Path(log_file)
        already_attached = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_path)
            for h in logger.handlers
        )
        if not already_attached:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    for handler in logger.handlers:
        handler.setLevel(level)

    return logger


def log_batch_metrics(logger: logging.Logger, batch_size: int,
                      processing_time_ms: float, success_count: int,
                      failure_count: int, **kwargs) -> None:
    """Log metrics for a reconciliation batch.

    Args:
        logger: Logger instance
        batch_size: Total number of records in the snapshot
        processing_time_ms: Time to process the batch
        success_count: Number of records pushed successfully
        failure_count: Number of records that failed
        **kwargs: Additional batch metrics
    """
    throughput = (success_count / (processing_time_ms / 1000)) if processing_time_ms > 0 else 0
    success_rate = (success_count / batch_size) if batch_size > 0 else 0

    extra = {
        'event_type': 'batch_metrics',
        'batch_size': batch_size,
        'processing_time_ms': round(processing_time_ms, 2),
        'success_count': success_count,
        'failure_count': failure_count,
        'success_rate': round(success_rate, 3),
        'throughput_ops_per_sec': round(throughput, 2),
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    if failure_count > 0:
        logger.warning(f"Batch processed with {failure_count} failures: {success_count}/{batch_size} succeeded", extra=extra)
    else:
        logger.info(f"Batch processed successfully: {batch_size} records in {processing_time_ms:.2f}ms", extra=extra)


class PerformanceTimer:
    """Context manager for measuring pipeline step duration."""

    def __init__(self, logger: logging.Logger, operation: str, **kwargs):
        self.logger = logger
        self.operation = operation
        self.kwargs = kwargs
        self.start_time = None
        self.elapsed_ms: Optional[float] = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            self.elapsed_ms = (time.time() - self.start_time) * 1000

            if exc_type:
                self.logger.warning(
                    f"{self.operation} failed after {self.elapsed_ms:.2f}ms: {exc_type.__name__}: {exc_val}",
                    extra=self.kwargs
                )
            elif self.elapsed_ms > 1000:
                self.logger.info(f"{self.operation} took {self.elapsed_ms:.2f}ms", extra=self.kwargs)
            else:
                self.logger.debug(f"{self.operation} took {self.elapsed_ms:.2f}ms", extra=self.kwargs)
