"""
Pytest configuration and fixtures for the test suite.
"""
import json
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest
import requests
from hypothesis import settings

from member_sync.database import TrackingDatabase
from member_sync.models import SourceRecord
from member_sync.sync.client import RemoteSyncClient
from member_sync.sync.config import RemoteSystemConfig

# Configure Hypothesis settings for all tests
# Disable deadline to avoid flaky failures with DuckDB file I/O
settings.register_profile("default", deadline=None)
settings.load_profile("default")

BASE_URL = "https://remote.example.com"
ENTITY_PATH = "/api/members"


def make_response(status: int, body: Any = None) -> requests.Response:
    """Build a real requests.Response carrying a JSON (or text) body."""
    response = requests.Response()
    response.status_code = status
    if body is None:
        response._content = b""
    elif isinstance(body, str):
        response._content = body.encode("utf-8")
    else:
        response._content = json.dumps(body).encode("utf-8")
    response.encoding = "utf-8"
    return response


class FakeRemoteSession:
    """
    In-memory stand-in for a downstream REST system.

    Entities live in a dict keyed by remote id. Responses for specific
    (method, path) pairs can be queued to simulate failures or unusual
    bodies; queued responses are consumed before the default behaviour.
    """

    def __init__(self, search_param: str = "email", list_key: Optional[str] = None):
        self.search_param = search_param
        self.list_key = list_key
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Any, Any]] = []
        self._queued: Dict[Tuple[str, str], List[Any]] = {}
        self._next_id = 100

    def queue(self, method: str, path: str, status: int, body: Any = None, times: int = 1) -> None:
        self._queued.setdefault((method, path), []).extend([(status, body)] * times)

    def queue_exception(self, method: str, path: str, error: Exception, times: int = 1) -> None:
        self._queued.setdefault((method, path), []).extend([error] * times)

    def add_entity(self, **fields) -> str:
        remote_id = str(self._next_id)
        self._next_id += 1
        self.entities[remote_id] = {"id": int(remote_id), **fields}
        return remote_id

    def calls_for(self, method: str) -> List[Tuple[str, str, Any, Any]]:
        return [call for call in self.calls if call[0] == method]

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        path = urlsplit(url).path
        self.calls.append((method, path, json, params))

        queued = self._queued.get((method, path))
        if queued:
            item = queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return make_response(*item)

        if path == ENTITY_PATH:
            if method == "GET":
                key = (params or {}).get(self.search_param, "")
                items = [
                    entity for entity in self.entities.values()
                    if str(entity.get(self.search_param, "")).lower() == str(key).lower()
                ]
                return make_response(200, {self.list_key: items} if self.list_key else items)
            if method == "POST":
                remote_id = self.add_entity(**(json or {}))
                return make_response(201, self.entities[remote_id])

        if path.startswith(ENTITY_PATH + "/"):
            remote_id = path.rsplit("/", 1)[1]
            if remote_id not in self.entities:
                return make_response(404, {"message": "Not found"})
            if method == "PUT":
                self.entities[remote_id].update(json or {})
                return make_response(200, self.entities[remote_id])
            if method == "DELETE":
                del self.entities[remote_id]
                return make_response(204)
            if method == "GET":
                return make_response(200, self.entities[remote_id])

        return make_response(404, {"message": f"No route for {method} {path}"})


def record(external_id: str, name: str = "Alice", email: Optional[str] = None, **payload) -> SourceRecord:
    """Build a SourceRecord with a name payload."""
    return SourceRecord(
        external_id=external_id,
        secondary_key=email if email is not None else f"{external_id.lower()}@example.com",
        payload={"name": name, **payload},
    )


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def tracking_db(tmp_dir):
    """Open tracking database in a temporary directory."""
    with TrackingDatabase(tmp_dir / "tracking.duckdb", "helpdesk_members") as db:
        yield db


@pytest.fixture
def remote_config():
    return RemoteSystemConfig(
        name="helpdesk",
        base_url=BASE_URL,
        api_key="secret",
        entity_path=ENTITY_PATH,
    )


@pytest.fixture
def fake_remote():
    return FakeRemoteSession()


@pytest.fixture
def sleeps():
    """Records requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def client(remote_config, fake_remote, sleeps):
    return RemoteSyncClient(remote_config, session=fake_remote, sleep=sleeps.append)
