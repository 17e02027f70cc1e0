"""Tests for the HTTP transport (requests is patched, nothing leaves the process)."""

import pytest
import requests

from targetsync.sync_client import SyncClient, SyncError, SyncStatus

ENDPOINT = "http://sync.local:8787/sync-state"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=None):
        self.status_code = status_code
        self._payload = payload
        if content is None:
            content = b"{}" if payload is None else b"json"
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


@pytest.fixture
def calls(monkeypatch):
    recorded = []
    responses = []

    def fake_request(self, method, url, **kwargs):
        recorded.append((method, url, kwargs))
        outcome = responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(requests.Session, "request", fake_request)
    return recorded, responses


def test_get_state_sends_token_and_timeout(calls):
    recorded, responses = calls
    responses.append(FakeResponse(payload={"targets": {}}))
    client = SyncClient(ENDPOINT, "tok", timeout=3)
    assert client.get_state(include_log=True) == {"targets": {}}
    method, url, kwargs = recorded[0]
    assert (method, url) == ("GET", ENDPOINT)
    assert kwargs["headers"] == {"X-Sync-Token": "tok"}
    assert kwargs["timeout"] == 3
    assert kwargs["params"] == {"includeLog": "1"}
    assert client.status.online


def test_put_update_sends_json(calls):
    recorded, responses = calls
    responses.append(FakeResponse(payload={"ok": 1}))
    client = SyncClient(ENDPOINT)
    client.put_update({"targets": {}})
    method, _url, kwargs = recorded[0]
    assert method == "PUT"
    assert kwargs["json"] == {"targets": {}}
    assert kwargs["headers"] == {}


@pytest.mark.parametrize("outcome,reason", [
    (requests.Timeout("slow"), "timeout"),
    (requests.ConnectionError("refused"), "network"),
    (FakeResponse(status_code=401), "http 401"),
    (FakeResponse(status_code=500), "http 500"),
])
def test_failures_mark_offline(calls, outcome, reason):
    _recorded, responses = calls
    responses.append(outcome)
    status = SyncStatus()
    client = SyncClient(ENDPOINT, status=status)
    with pytest.raises(SyncError) as excinfo:
        client.get_state()
    assert excinfo.value.reason == reason
    assert status.describe() == f"Sync: offline ({reason})"


def test_non_json_body_is_empty(calls):
    _recorded, responses = calls
    responses.append(FakeResponse(payload=None, content=b"<html>"))
    assert SyncClient(ENDPOINT).get_state() == {}


def test_invalid_endpoint_never_sends(calls):
    recorded, _responses = calls
    client = SyncClient("not a url")
    assert not client.configured
    with pytest.raises(SyncError) as excinfo:
        client.put_update({"targets": {}})
    assert excinfo.value.reason == "config incomplete"
    assert recorded == []


def test_status_describe():
    assert SyncStatus(enabled=False).describe() == "Sync: off"
    status = SyncStatus()
    assert status.describe() == "Sync: offline"
    status.set_online()
    assert status.describe() == "Sync: online"
