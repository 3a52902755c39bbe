"""Custom exceptions for synchronization operations."""

from typing import Optional, Dict, Any, List
from datetime import datetime


class SyncError(Exception):
    """Base exception for synchronization errors."""

    def __init__(self, message: str, error_code: str = "sync_error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class RemoteError(SyncError):
    """Raised when the downstream system answers with a non-2xx status.

    Network-level failures are mapped to a synthetic status so that callers
    only ever branch on ``status``.
    """

    def __init__(self, status: int, details: Any = None, api_name: str = "Remote API",
                 message: Optional[str] = None):
        self.status = status
        self.api_name = api_name
        message = message or f"{api_name} error ({status})"
        super().__init__(message, "remote_error", {"status": status, "body": details})
        # Raw response body, kept separately because it is not always a dict
        self.body = details

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    @property
    def is_conflict(self) -> bool:
        """True for 409, and for 400 responses reporting an existing entity."""
        if self.status == 409:
            return True
        return self.status == 400 and _mentions_already_exists(self.body)


class RemoteNotFoundError(RemoteError):
    """Raised when the addressed remote entity does not exist (HTTP 404)."""

    def __init__(self, details: Any = None, api_name: str = "Remote API"):
        super().__init__(404, details, api_name)
        self.error_code = "remote_not_found"


class RemoteTimeoutError(RemoteError):
    """Raised when the remote system does not respond within the request timeout."""

    def __init__(self, timeout_seconds: float, api_name: str = "Remote API"):
        message = f"Request timeout: {api_name} did not respond within {timeout_seconds:g} seconds"
        super().__init__(TIMEOUT_STATUS, None, api_name, message=message)
        self.error_code = "remote_timeout"
        self.details["timeout_seconds"] = timeout_seconds


class UnrecognizedResponseError(SyncError):
    """Raised when a remote response body matches none of the known shapes."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "unrecognized_response", details)


class LinkingRequiredError(SyncError):
    """Raised when a create collides with a remote entity that cannot be found.

    The remote system claims the entity exists but the lookup by secondary
    key does not return it, so the record has to be linked manually.
    """

    def __init__(self, external_id: str, secondary_key: Optional[str], status: int):
        message = (f"Remote system reports {secondary_key or external_id} already exists "
                   f"but it was not found by lookup - manual linking required")
        details = {
            "external_id": external_id,
            "secondary_key": secondary_key,
            "status": status,
        }
        super().__init__(message, "linking_required", details)


class MissingCredentialsError(SyncError):
    """Raised when a remote system is not fully configured."""

    def __init__(self, system: str, missing: List[str]):
        message = f"Missing {' and '.join(missing)}"
        details = {
            "system": system,
            "missing": missing,
        }
        super().__init__(message, "missing_credentials", details)


class SnapshotError(SyncError):
    """Raised when a source provider cannot deliver a snapshot."""

    def __init__(self, source: str, reason: str):
        message = f"Failed to fetch snapshot from {source}: {reason}"
        details = {
            "source": source,
            "reason": reason
        }
        super().__init__(message, "snapshot_failed", details)


# Synthetic statuses for failures that never produced an HTTP response
NETWORK_ERROR_STATUS = 599
TIMEOUT_STATUS = 408


def _mentions_already_exists(body: Any) -> bool:
    """Search an error payload for an "already exist(s)" message.

    Helpdesk APIs report duplicates as a 400 with the message nested under
    ``_embedded.errors``; other systems put it in ``message`` or ``errors``.
    """
    if body is None:
        return False
    if isinstance(body, str):
        return "already exist" in body.lower()
    if isinstance(body, dict):
        return any(_mentions_already_exists(value) for value in body.values())
    if isinstance(body, list):
        return any(_mentions_already_exists(item) for item in body)
    return False
