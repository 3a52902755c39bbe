"""Base interfaces for synchronization components."""

from abc import ABC, abstractmethod
from typing import List, Protocol, runtime_checkable

from ..models import SourceRecord


class SourceProvider(ABC):
    """Interface for systems that deliver the authoritative member snapshot."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of the source, used in logs and errors."""
        pass

    @abstractmethod
    def fetch_snapshot(self) -> List[SourceRecord]:
        """Return the full current snapshot. Invoked once per run."""
        pass


@runtime_checkable
class SyncLogger(Protocol):
    """Logging capability required by the sync engine.

    ``logging.Logger`` satisfies this interface.
    """

    def debug(self, msg: str, *args, **kwargs) -> None: ...

    def info(self, msg: str, *args, **kwargs) -> None: ...

    def warning(self, msg: str, *args, **kwargs) -> None: ...

    def error(self, msg: str, *args, **kwargs) -> None: ...


class NullSyncLogger:
    """Logger that discards everything; the default for engine components."""

    def debug(self, msg: str, *args, **kwargs) -> None:
        pass

    def info(self, msg: str, *args, **kwargs) -> None:
        pass

    def warning(self, msg: str, *args, **kwargs) -> None:
        pass

    def error(self, msg: str, *args, **kwargs) -> None:
        pass
