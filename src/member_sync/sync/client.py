"""
HTTP client for the downstream systems' REST APIs.

Executes authenticated create/update/delete/search calls and applies the
retry policy: only server errors (5xx, including the synthetic status used
for connection failures) are retried, with exponential backoff of 1s, 2s, 4s.
Client errors are never repeated blindly.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from ..models import parse_list_envelope
from .config import RemoteSystemConfig
from .exceptions import (
    MissingCredentialsError, NETWORK_ERROR_STATUS, RemoteError, RemoteNotFoundError,
    RemoteTimeoutError, UnrecognizedResponseError
)
from .interfaces import NullSyncLogger, SyncLogger

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3


@dataclass
class RemoteResponse:
    """Status and decoded body of a successful (2xx) response."""
    status: int
    body: Any


@dataclass
class ConnectionCheck:
    """Outcome of a connectivity test against a downstream system."""
    success: bool
    detail: Any = None
    error: Optional[str] = None


class RemoteSyncClient:
    """Client for one downstream system."""

    def __init__(self,
                 system: RemoteSystemConfig,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[SyncLogger] = None):
        """Initialize the client.

        Args:
            system: Endpoint and credential settings of the downstream system
            session: HTTP session to use; a new one is created if omitted
            timeout: Per-request timeout in seconds
            max_retries: Default number of retries for server errors
            sleep: Function used to wait between retries
            logger: Logger for request tracing
        """
        self.system = system
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max_retries
        self._sleep = sleep
        self.logger = logger or NullSyncLogger()

    @property
    def api_name(self) -> str:
        return f"{self.system.name} API"

    def _url(self, endpoint: str) -> str:
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self.system.base_url.rstrip('/')}{path}"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            self.system.api_key_header: self.system.api_key,
        }
        headers.update(self.system.extra_headers)
        return headers

    def request(self, endpoint: str, method: str, body: Optional[Any] = None,
                params: Optional[Dict[str, Any]] = None) -> RemoteResponse:
        """Make one authenticated request.

        Args:
            endpoint: API path relative to the base URL
            method: HTTP method
            body: JSON body to send
            params: Query string parameters

        Returns:
            RemoteResponse for any 2xx status

        Raises:
            MissingCredentialsError: If base URL or API key is not configured
            RemoteNotFoundError: On 404
            RemoteTimeoutError: If the request times out
            RemoteError: On any other non-2xx status or connection failure
        """
        missing = self.system.check_credentials()
        if missing:
            raise MissingCredentialsError(self.system.name, missing)

        method = method.upper()
        self.logger.debug(f"{method} {endpoint}")

        try:
            response = self.session.request(
                method,
                self._url(endpoint),
                json=body,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.Timeout:
            raise RemoteTimeoutError(self.timeout, self.api_name)
        except requests.RequestException as e:
            raise RemoteError(
                NETWORK_ERROR_STATUS,
                {"error": str(e)},
                self.api_name,
                message=f"{self.api_name} request failed: {e}",
            )

        status = response.status_code
        self.logger.debug(f"Response status: {status}")
        parsed = _decode_body(response)

        if 200 <= status < 300:
            return RemoteResponse(status=status, body=parsed)
        if status == 404:
            raise RemoteNotFoundError(parsed, self.api_name)
        raise RemoteError(status, parsed, self.api_name)

    def request_with_retry(self, endpoint: str, method: str, body: Optional[Any] = None,
                           params: Optional[Dict[str, Any]] = None,
                           max_retries: Optional[int] = None) -> RemoteResponse:
        """Make a request, retrying server errors with exponential backoff.

        Waits 2**attempt seconds between attempts (1s, 2s, 4s, ...). Any
        error below 500 is raised immediately.

        Args:
            endpoint: API path relative to the base URL
            method: HTTP method
            body: JSON body to send
            params: Query string parameters
            max_retries: Retries after the first attempt (client default if None)

        Returns:
            RemoteResponse of the first successful attempt

        Raises:
            RemoteError: The last error once retries are exhausted, or the
                first non-retryable one
        """
        retries = self.max_retries if max_retries is None else max_retries
        last_error: Optional[RemoteError] = None

        for attempt in range(retries + 1):
            try:
                return self.request(endpoint, method, body, params)
            except RemoteError as e:
                last_error = e
                if not e.is_server_error:
                    raise

                if attempt < retries:
                    delay = 2 ** attempt
                    self.logger.warning(
                        f"Server error ({e.status}) from {self.api_name}, retrying in {delay}s... "
                        f"(attempt {attempt + 1}/{retries})"
                    )
                    self._sleep(delay)

        raise last_error

    def find_by_secondary_key(self, key: Optional[str]) -> Optional[str]:
        """Look up an existing remote entity by its secondary key.

        Args:
            key: Secondary key value, e.g. an email address

        Returns:
            Remote id of the best match, or None if nothing was found

        Raises:
            UnrecognizedResponseError: If the list response has an unknown shape
            RemoteError: If the search request fails
        """
        if not key:
            return None

        search_param = self.system.search_param
        try:
            response = self.request_with_retry(
                self.system.entity_path, "GET", params={search_param: key}
            )
        except RemoteNotFoundError:
            return None

        envelope = parse_list_envelope(response.body)
        candidates = [item for item in envelope.items if item.get(self.system.id_field) is not None]
        if not candidates:
            return None

        exact = [item for item in candidates if _matches_key(item.get(search_param), key)]
        chosen = (exact or candidates)[0]
        remote_id = str(chosen[self.system.id_field])
        self.logger.debug(f"Found existing entity {remote_id} for {search_param}={key} ({envelope.shape.value})")
        return remote_id

    def create_entity(self, body: Dict[str, Any]) -> str:
        """Create a remote entity and return its identifier."""
        response = self.request_with_retry(self.system.entity_path, "POST", body)
        remote_id = response.body.get(self.system.id_field) if isinstance(response.body, dict) else None
        if remote_id is None:
            raise UnrecognizedResponseError(
                f"Create response of {self.api_name} carries no '{self.system.id_field}'",
                details={"body_preview": repr(response.body)[:500]},
            )
        return str(remote_id)

    def update_entity(self, remote_id: str, body: Dict[str, Any]) -> None:
        """Update a remote entity; raises RemoteNotFoundError if it is gone."""
        self.request_with_retry(f"{self.system.entity_path.rstrip('/')}/{remote_id}", "PUT", body)

    def delete_entity(self, remote_id: str) -> None:
        """Delete a remote entity; raises RemoteNotFoundError if it is gone."""
        self.request_with_retry(f"{self.system.entity_path.rstrip('/')}/{remote_id}", "DELETE")

    def test_connection(self) -> ConnectionCheck:
        """Check credentials and reachability with a single GET."""
        missing = self.system.check_credentials()
        if missing:
            return ConnectionCheck(success=False, error=f"Missing {' and/or '.join(missing)}")

        try:
            response = self.request(self.system.health_path or self.system.entity_path, "GET")
        except RemoteError as e:
            return ConnectionCheck(success=False, detail=e.body, error=e.message)
        return ConnectionCheck(success=True, detail=response.body)


def _decode_body(response: requests.Response) -> Any:
    """Decode a JSON body, falling back to text for non-JSON responses."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _matches_key(value: Any, key: str) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == key.strip().lower()
    if isinstance(value, list):
        return any(_matches_key(item, key) for item in value)
    if isinstance(value, dict):
        return any(_matches_key(item, key) for item in value.values())
    return False
