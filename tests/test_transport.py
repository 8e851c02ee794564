#!/usr/bin/env python3
"""
Tests for remote endpoints: directory remote and HTTP remote with retries.
"""

import pytest
import requests

from lrmsync.errors import AuthenticationError, SyncUnavailableError, TransportError
from lrmsync.snapshot import ResourceSnapshot
from lrmsync.transport import DirectoryRemote, HttpRemote


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Replays queued responses (or exceptions) and records requests."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.headers = {}
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _remote(session, **kwargs):
    delays = []
    remote = HttpRemote(
        "https://lrm.example.com/api/",
        "my-app",
        api_key="secret",
        session=session,
        sleep=delays.append,
        **kwargs,
    )
    return remote, delays


def test_directory_remote_round_trip(tmp_path):
    remote = DirectoryRemote(str(tmp_path))
    snapshot = ResourceSnapshot.from_mapping({"Greeting": "Hi"})

    empty, _ = remote.fetch_snapshot()
    revision = remote.push_snapshot(snapshot)
    fetched, fetched_revision = remote.fetch_snapshot()

    assert len(empty) == 0
    assert revision == fetched_revision == snapshot.revision
    assert fetched.same_content(snapshot)


def test_directory_remote_missing_directory(tmp_path):
    remote = DirectoryRemote(str(tmp_path / "unmounted"))
    with pytest.raises(SyncUnavailableError):
        remote.fetch_snapshot()
    with pytest.raises(SyncUnavailableError):
        remote.push_snapshot(ResourceSnapshot())


def test_http_fetch_sends_bearer_token():
    snapshot = ResourceSnapshot.from_mapping({"Greeting": "Hi"})
    session = FakeSession([FakeResponse(200, snapshot.to_dict())])
    remote, _ = _remote(session)

    fetched, revision = remote.fetch_snapshot()

    assert fetched.same_content(snapshot)
    assert revision == snapshot.revision
    assert session.headers["Authorization"] == "Bearer secret"
    assert session.calls[0][:2] == ("GET", "https://lrm.example.com/api/projects/my-app/snapshot")


def test_http_push_returns_server_revision():
    session = FakeSession([FakeResponse(200, {"revision": "srv-7"})])
    remote, _ = _remote(session)

    revision = remote.push_snapshot(ResourceSnapshot.from_mapping({"A": "1"}))

    assert revision == "srv-7"
    method, _, kwargs = session.calls[0]
    assert method == "PUT"
    assert kwargs["json"]["entries"][0]["key"] == "A"


def test_http_retries_server_errors_with_backoff():
    snapshot = ResourceSnapshot.from_mapping({"A": "1"})
    session = FakeSession([
        FakeResponse(503),
        requests.exceptions.ConnectionError("reset"),
        FakeResponse(200, snapshot.to_dict()),
    ])
    remote, delays = _remote(session, max_retries=3)

    fetched, _ = remote.fetch_snapshot()

    assert fetched.same_content(snapshot)
    assert delays == [1, 2]


def test_http_gives_up_after_retries():
    session = FakeSession([FakeResponse(500), FakeResponse(502)])
    remote, delays = _remote(session, max_retries=2)

    with pytest.raises(SyncUnavailableError) as exc_info:
        remote.fetch_snapshot()

    assert exc_info.value.attempts == 2
    assert delays == [1]


def test_http_auth_failure_is_not_retried():
    session = FakeSession([FakeResponse(401), FakeResponse(200, {})])
    remote, delays = _remote(session)

    with pytest.raises(AuthenticationError):
        remote.fetch_snapshot()

    assert len(session.calls) == 1
    assert delays == []
    assert isinstance(AuthenticationError("x"), TransportError)


def test_http_client_error_is_fatal():
    session = FakeSession([FakeResponse(404, text="no such project")])
    remote, _ = _remote(session)
    with pytest.raises(TransportError, match="404"):
        remote.fetch_snapshot()
