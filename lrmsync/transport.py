#!/usr/bin/env python3
"""
Remote endpoints.

A remote is anything that can hand out its current snapshot and accept a new
one in a single request: the cloud service over HTTP, or a directory such as a
repository checkout or a shared folder. Transport and auth problems surface as
TransportError subclasses so they are never mistaken for merge conflicts.
"""

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

import requests

from .errors import AuthenticationError, SyncUnavailableError, TransportError
from .snapshot import ResourceSnapshot
from .storage import atomic_write_json, read_snapshot

logger = logging.getLogger(__name__)


class RemoteEndpoint(ABC):
    """Fetch/push contract shared by every remote."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable endpoint description."""
        pass

    @abstractmethod
    def fetch_snapshot(self) -> tuple[ResourceSnapshot, str]:
        """
        Fetch the remote state.

        Returns:
            Tuple of (snapshot, revision)

        Raises:
            TransportError: remote unreachable or credentials rejected
        """
        pass

    @abstractmethod
    def push_snapshot(self, snapshot: ResourceSnapshot) -> str:
        """
        Replace the remote state in one request.

        Returns:
            Revision the remote assigned to the stored snapshot
        """
        pass


class DirectoryRemote(RemoteEndpoint):
    """
    Remote backed by a directory.

    Used for repository integration (point it at a checkout) and for shared
    folders. The directory must already exist; a missing directory is treated
    like an unreachable server.
    """

    SNAPSHOT_FILE = "lrm-snapshot.json"

    def __init__(self, path: str):
        self.root = Path(path)
        self.snapshot_path = self.root / self.SNAPSHOT_FILE

    @property
    def name(self) -> str:
        return f"dir:{self.root}"

    def _check_reachable(self) -> None:
        if not self.root.is_dir():
            raise SyncUnavailableError(f"Remote directory not found: {self.root}")

    def fetch_snapshot(self) -> tuple[ResourceSnapshot, str]:
        self._check_reachable()
        if not self.snapshot_path.exists():
            snapshot = ResourceSnapshot()
        else:
            snapshot = read_snapshot(self.snapshot_path)
        return snapshot, snapshot.revision

    def push_snapshot(self, snapshot: ResourceSnapshot) -> str:
        self._check_reachable()
        try:
            atomic_write_json(self.snapshot_path, snapshot.to_dict())
        except OSError as e:
            raise TransportError(f"Cannot write {self.snapshot_path}: {e}")
        return snapshot.revision


class HttpRemote(RemoteEndpoint):
    """
    Remote backed by the cloud HTTP API.

    Endpoints:
        GET  {base_url}/projects/{project}/snapshot  -> snapshot document
        PUT  {base_url}/projects/{project}/snapshot  -> {"revision": "..."}

    Connection errors and 5xx responses are retried with exponential backoff;
    401/403 fail immediately with AuthenticationError.
    """

    def __init__(
        self,
        base_url: str,
        project: str,
        api_key: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the HTTP remote.

        Args:
            base_url: API root, e.g. https://lrm.example.com/api
            project: Project slug on the server
            api_key: Optional API key sent as a bearer token
            timeout: Request timeout in seconds
            max_retries: Attempts before giving up with SyncUnavailableError
            session: Optional preconfigured requests.Session
            sleep: Backoff sleep function (replaceable in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.project = project
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.session = session or requests.Session()
        self._sleep = sleep
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    @property
    def name(self) -> str:
        return f"{self.base_url}/projects/{self.project}"

    @property
    def snapshot_url(self) -> str:
        return f"{self.base_url}/projects/{self.project}/snapshot"

    def _request(self, method: str, **kwargs) -> requests.Response:
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self.session.request(
                    method, self.snapshot_url, timeout=self.timeout, **kwargs
                )
            except requests.exceptions.RequestException as e:
                last_error = str(e)
            else:
                if response.status_code in (401, 403):
                    raise AuthenticationError(
                        f"{method} {self.snapshot_url} rejected credentials ({response.status_code})"
                    )
                if response.status_code < 500:
                    if response.status_code >= 400:
                        raise TransportError(
                            f"{method} {self.snapshot_url} failed: {response.status_code} {response.text[:200]}"
                        )
                    return response
                last_error = f"HTTP {response.status_code}"

            logger.warning(
                "Request failed (attempt %d/%d): %s", attempt + 1, self.max_retries, last_error
            )
            if attempt < self.max_retries - 1:
                self._sleep(2 ** attempt)

        raise SyncUnavailableError(
            f"{method} {self.snapshot_url} failed after {self.max_retries} attempts: {last_error}",
            attempts=self.max_retries,
        )

    def fetch_snapshot(self) -> tuple[ResourceSnapshot, str]:
        response = self._request("GET")
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Remote returned invalid JSON: {e}")
        snapshot = ResourceSnapshot.from_dict(data)
        return snapshot, snapshot.revision

    def push_snapshot(self, snapshot: ResourceSnapshot) -> str:
        response = self._request("PUT", json=snapshot.to_dict())
        try:
            return response.json().get("revision") or snapshot.revision
        except ValueError:
            return snapshot.revision
