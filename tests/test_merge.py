"""Tests for targetsync.merge."""

import copy
import logging

from targetsync.merge import (
    activity_summary,
    bucket_id,
    coords_for_subjects,
    empty_activity,
    merge_activity,
    merge_shared_coordinates,
)
from targetsync.normalize import BUCKET_MS, normalize_observation


def _obs(seen_at, key="id:42", coord="1:2:3", planet="*", name="Foo", bucket=None):
    raw = {
        "subjectKey": key, "subjectName": name, "coordinate": coord,
        "seenAt": seen_at, "planetActivity": planet,
    }
    if bucket is not None:
        raw["bucketTimestamp"] = bucket
    return normalize_observation(raw)


def test_bucket_id_format():
    obs = _obs(BUCKET_MS + 10)
    assert bucket_id(obs) == f"id:42|1:2:3|{BUCKET_MS}"


def test_newer_sighting_replaces_entry():
    merged = merge_activity(empty_activity(), [_obs(100, planet="*"), _obs(200, planet="15")])
    (bucket,) = merged["buckets"].values()
    assert bucket["entry"]["seenAt"] == 200
    assert bucket["entry"]["planetActivity"] == "15"
    assert bucket["lastUpdated"] == 200


def test_older_sighting_is_ignored():
    first = merge_activity(empty_activity(), [_obs(100, planet="*")])
    second = merge_activity(first, [_obs(50, planet="15")])
    (bucket,) = second["buckets"].values()
    assert bucket["entry"]["seenAt"] == 100
    assert bucket["entry"]["planetActivity"] == "*"


def test_equal_seen_at_favours_incoming():
    first = merge_activity(empty_activity(), [_obs(100, planet="*")])
    second = merge_activity(first, [_obs(100, planet="7")])
    (bucket,) = second["buckets"].values()
    assert bucket["entry"]["planetActivity"] == "7"


def test_merge_is_idempotent():
    batch = [_obs(100), _obs(BUCKET_MS + 5, coord="4:5:6"), _obs(300, key="id:7")]
    once = merge_activity(empty_activity(), batch)
    twice = merge_activity(once, batch)
    assert twice["buckets"] == once["buckets"]
    assert twice["players"] == once["players"]


def test_merge_does_not_mutate_input():
    base = merge_activity(empty_activity(), [_obs(100)])
    frozen = copy.deepcopy(base)
    merge_activity(base, [_obs(200), _obs(300, key="id:9")])
    assert base == frozen


def test_separate_buckets_per_window():
    merged = merge_activity(empty_activity(), [_obs(10), _obs(BUCKET_MS + 10), _obs(10, coord="9:9:9")])
    assert len(merged["buckets"]) == 3


def test_player_last_seen_is_monotonic():
    merged = merge_activity(empty_activity(), [_obs(500, name="New"), _obs(100, name="Old")])
    player = merged["players"]["id:42"]
    assert player["lastSeen"] == 500
    assert player["subjectName"] == "New"


def test_shared_coordinates_union_sorted():
    merged = merge_shared_coordinates({"id:1": ["2:1:1"]}, {"id:1": ["1:10:1", "1:9:1", "2:1:1"], "id:2": ["3:3:3"]})
    assert merged == {"id:1": ["1:9:1", "1:10:1", "2:1:1"], "id:2": ["3:3:3"]}


def test_shared_coordinates_never_shrink():
    base = {"id:1": ["1:1:1", "2:2:2"]}
    merged = merge_shared_coordinates(base, {"id:1": ["1:1:1"]})
    assert merged["id:1"] == ["1:1:1", "2:2:2"]
    assert base == {"id:1": ["1:1:1", "2:2:2"]}


def test_activity_summary_shape():
    activity = merge_activity(empty_activity(), [_obs(100)])
    activity["updatedAt"] = 123
    summary = activity_summary(activity, {"id:42": ["1:2:3"]})
    assert summary["bucketCount"] == 1
    assert summary["updatedAt"] == 123
    assert summary["coordinates"] == {"id:42": ["1:2:3"]}
    assert "buckets" not in summary
    assert summary["players"]["id:42"]["lastSeen"] == 100


def test_coords_for_subjects():
    shared = {"id:1": ["2:2:2", "1:1:1"], "id:2": ["1:1:1", "3:3:3"], "id:3": ["9:9:9"]}
    assert coords_for_subjects(shared, ["id:1", "id:2", "id:missing"]) == ["1:1:1", "2:2:2", "3:3:3"]


def test_ignored_sighting_is_logged_on_server_logger(caplog):
    caplog.set_level(logging.DEBUG, logger="sync_server")
    first = merge_activity(empty_activity(), [_obs(100)])
    merge_activity(first, [_obs(50)])
    assert any(
        r.name == "sync_server" and "Ignored older sighting" in r.getMessage()
        for r in caplog.records
    )
