"""End-to-end tests of the Flask sync server."""

import pytest

from targetsync.sync_server import SYNC_PATH, TOKEN_HEADER, create_app


@pytest.fixture
def client(store):
    app = create_app(store)
    app.testing = True
    return app.test_client()


@pytest.fixture
def secured(store):
    app = create_app(store, sync_token="s3cret")
    app.testing = True
    return app.test_client()


def _lock(op, owner, token, **extra):
    return {"lockCommand": {"op": op, "ownerId": owner, "token": token, **extra}}


def test_targets_round_trip(client):
    resp = client.put(SYNC_PATH, json={"targets": {"id:42": {"displayName": "Foo"}}, "updatedAt": 1000})
    assert resp.status_code == 200

    body = client.get(SYNC_PATH).get_json()
    assert body["targets"] == {"id:42": {"displayName": "Foo"}}
    assert body["updatedAt"] == 1000
    assert body["lock"] is None
    assert body["activitySummary"]["bucketCount"] == 0


def test_late_older_observation_does_not_win(client):
    first = {"subjectKey": "id:42", "coordinate": "1:2:3", "seenAt": 100, "planetActivity": "*"}
    second = dict(first, seenAt=50, planetActivity="30")
    client.put(SYNC_PATH, json={"activityBatch": [first]})
    client.put(SYNC_PATH, json={"activityBatch": [second]})

    body = client.get(f"{SYNC_PATH}?includeLog=1").get_json()
    (bucket,) = body["activityLog"].values()
    assert bucket["entry"]["seenAt"] == 100
    assert bucket["entry"]["planetActivity"] == "*"
    assert body["activitySummary"]["players"]["id:42"]["lastSeen"] == 100


def test_older_observation_in_same_batch_does_not_win(client):
    newer = {"subjectKey": "id:42", "coordinate": "1:2:3", "seenAt": 100, "planetActivity": "*"}
    older = dict(newer, seenAt=50, planetActivity="30")
    assert client.put(SYNC_PATH, json={"activityBatch": [newer, older]}).status_code == 200

    body = client.get(f"{SYNC_PATH}?includeLog=1").get_json()
    assert body["activitySummary"]["bucketCount"] == 1
    (bucket,) = body["activityLog"].values()
    assert bucket["entry"]["seenAt"] == 100
    assert bucket["entry"]["planetActivity"] == "*"


def test_edit_lock_handoff(client):
    got = client.put(SYNC_PATH, json=_lock("acquire", "h1", "t1", ttlMs=60000)).get_json()
    assert got["lockResult"]["status"] == "granted"

    refused = client.put(SYNC_PATH, json=_lock("acquire", "h2", "t2")).get_json()
    assert refused["lockResult"]["ok"] is False
    assert refused["lockResult"]["status"] == "occupied"
    assert refused["lockResult"]["holder"]["ownerId"] == "h1"

    released = client.put(SYNC_PATH, json=_lock("release", "h1", "t1")).get_json()
    assert released["lockResult"]["status"] == "released"
    assert released["lock"] is None

    granted = client.put(SYNC_PATH, json=_lock("acquire", "h2", "t2")).get_json()
    assert granted["lockResult"]["ok"] is True
    assert granted["lock"]["ownerId"] == "h2"
    assert "token" not in granted["lock"]


def test_control_command_is_stored(client):
    command = {"commandId": "c-1", "action": "start", "queue": ["1:1:1", "bad"], "continuous": True}
    body = client.put(SYNC_PATH, json={"control": command, "controlUpdatedAt": 77}).get_json()
    assert body["control"]["queue"] == ["1:1:1"]
    assert body["controlUpdatedAt"] == 77


def test_include_activity_alias(client):
    client.put(SYNC_PATH, json={"activityBatch": [{"subjectKey": "id:1", "coordinate": "1:1:1", "seenAt": 5}]})
    assert "activityLog" in client.get(f"{SYNC_PATH}?includeActivity=true").get_json()
    assert "activityLog" not in client.get(SYNC_PATH).get_json()


def test_bare_target_map_body(client):
    client.put(SYNC_PATH, json={"id:1": True})
    assert client.get(SYNC_PATH).get_json()["targets"] == {"id:1": {"displayName": ""}}


class TestErrors:
    def test_invalid_json(self, client):
        resp = client.put(SYNC_PATH, data="{nope", content_type="application/json")
        assert resp.status_code == 400

    def test_no_recognized_keys(self, client):
        resp = client.put(SYNC_PATH, json={"something": 1})
        assert resp.status_code == 400
        assert "error" in resp.get_json()

    def test_empty_body(self, client):
        assert client.put(SYNC_PATH, data="").status_code == 400

    def test_unknown_path(self, client):
        resp = client.get("/elsewhere")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "not found"}

    def test_wrong_method(self, client):
        assert client.post(SYNC_PATH, json={}).status_code == 405

    def test_payload_too_large(self, client):
        resp = client.put(SYNC_PATH, data="x" * (1024 * 1024 + 10), content_type="application/json")
        assert resp.status_code == 413

    def test_persistence_failure_returns_500(self, client, store, monkeypatch):
        def boom(*_args, **_kwargs):
            raise OSError("read-only")

        monkeypatch.setattr("targetsync.state_store.os.replace", boom)
        resp = client.put(SYNC_PATH, json={"targets": {"id:1": {}}})
        assert resp.status_code == 500
        monkeypatch.undo()
        assert client.get(SYNC_PATH).get_json()["targets"] == {}


class TestAuth:
    def test_missing_token(self, secured):
        assert secured.get(SYNC_PATH).status_code == 401
        assert secured.put(SYNC_PATH, json={"targets": {}}).status_code == 401

    def test_wrong_token(self, secured):
        assert secured.get(SYNC_PATH, headers={TOKEN_HEADER: "nope"}).status_code == 401

    def test_header_token(self, secured):
        assert secured.get(SYNC_PATH, headers={TOKEN_HEADER: "s3cret"}).status_code == 200

    def test_bearer_token(self, secured):
        assert secured.get(SYNC_PATH, headers={"Authorization": "Bearer s3cret"}).status_code == 200

    def test_unauthorized_put_changes_nothing(self, secured, store):
        secured.put(SYNC_PATH, json={"targets": {"id:1": {}}})
        assert store.snapshot()["targets"] == {}


def test_preflight_and_cors(client):
    resp = client.open(SYNC_PATH, method="OPTIONS")
    assert resp.status_code == 204
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert TOKEN_HEADER in resp.headers["Access-Control-Allow-Headers"]


def test_health(client):
    body = client.get("/health").get_json()
    assert body["status"] == "ok"
