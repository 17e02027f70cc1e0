"""
Sync client: the HTTP transport agents use to reach the sync server.

All state lives on the server; this client only carries requests and keeps
track of whether the last round-trip worked.

Failure policy: no automatic retry. A timeout, connection error or non-2xx
response marks the shared SyncStatus offline with a short reason and raises
SyncError; the scheduler that issued the request simply tries again on its
next natural tick.
"""

import logging
import threading

import requests as _requests

from targetsync.utils import is_valid_endpoint

logger = logging.getLogger("targetsync")

TOKEN_HEADER = "X-Sync-Token"


class SyncError(Exception):
    """A sync round-trip failed. `reason` is a short status string."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or f"sync {reason}")
        self.reason = reason


class SyncStatus:
    """Online/offline flag plus the reason for the last failure."""

    def __init__(self, enabled: bool = True):
        self._lock = threading.Lock()
        self.enabled = enabled
        self.online = False
        self.last_error = ""

    def set_online(self) -> None:
        with self._lock:
            self.online = True
            self.last_error = ""

    def set_offline(self, reason: str = "") -> None:
        with self._lock:
            if self.online or reason != self.last_error:
                logger.info(f"Sync offline ({reason})" if reason else "Sync offline")
            self.online = False
            self.last_error = reason or ""

    def describe(self) -> str:
        with self._lock:
            if not self.enabled:
                return "Sync: off"
            if self.online:
                return "Sync: online"
            if self.last_error:
                return f"Sync: offline ({self.last_error})"
            return "Sync: offline"


class SyncClient:
    """
    Talks to GET/PUT /sync-state.

    Args:
        endpoint: Full URL of the sync resource (http://host:8787/sync-state).
        token:    Shared secret sent as X-Sync-Token; empty sends nothing.
        timeout:  Seconds per HTTP request.
        status:   Optional SyncStatus shared with the agent.
    """

    def __init__(self, endpoint: str, token: str = "", *, timeout: float = 10, status: SyncStatus = None):
        self._endpoint = (endpoint or "").strip()
        self._token = token or ""
        self._timeout = timeout
        self.status = status or SyncStatus()
        self._session = _requests.Session()

    @property
    def configured(self) -> bool:
        return is_valid_endpoint(self._endpoint)

    # ── Internal helpers ──────────────────────────────────────────────────

    def _request(self, method: str, *, params: dict = None, body: dict = None) -> dict:
        """Perform one round-trip. Returns parsed JSON (a dict) or raises SyncError."""
        if not self.configured:
            self.status.set_offline("config incomplete")
            raise SyncError("config incomplete", "sync endpoint invalid")

        headers = {}
        if self._token:
            headers[TOKEN_HEADER] = self._token
        try:
            r = self._session.request(
                method, self._endpoint, params=params, json=body,
                headers=headers, timeout=self._timeout,
            )
        except _requests.Timeout as exc:
            self.status.set_offline("timeout")
            logger.warning(f"  [sync-http] {method} timed out: {exc}")
            raise SyncError("timeout") from exc
        except _requests.RequestException as exc:
            self.status.set_offline("network")
            logger.warning(f"  [sync-http] {method} failed: {exc}")
            raise SyncError("network") from exc

        if not 200 <= r.status_code < 300:
            reason = f"http {r.status_code}"
            self.status.set_offline(reason)
            logger.warning(f"  [sync-http] {method} rejected: {reason}")
            raise SyncError(reason)

        self.status.set_online()
        if not r.content or not r.content.strip():
            return {}
        try:
            data = r.json()
        except ValueError:
            logger.warning(f"  [sync-http] {method} returned a non-JSON body")
            return {}
        return data if isinstance(data, dict) else {}

    # ── Public API ────────────────────────────────────────────────────────

    def get_state(self, include_log: bool = False) -> dict:
        """Fetch the public snapshot (optionally with the raw activity log)."""
        params = {"includeLog": "1"} if include_log else None
        return self._request("GET", params=params)

    def put_update(self, envelope: dict) -> dict:
        """Submit a partial update envelope; returns the resulting snapshot."""
        return self._request("PUT", body=envelope)

    def close(self) -> None:
        self._session.close()
