"""Tests for targetsync.local_store.LocalStore."""

import json


def test_missing_file_is_empty(local):
    assert local.load_targets() == {}
    assert local.last_command_id() == ""


def test_targets_and_command_id_share_file(local):
    saved = local.save_targets({"id:1": True, "id:2": {"name": "B"}, "bad": "x"})
    local.set_last_command_id("abc")
    assert saved == {"id:1": {"displayName": ""}, "id:2": {"displayName": "B"}}
    with open(local.filepath, "r", encoding="utf-8") as f:
        data = json.load(f)
    assert data == {"targets": saved, "lastCommandId": "abc"}
    assert local.load_targets() == saved


def test_corrupt_file_starts_fresh(local):
    with open(local.filepath, "w", encoding="utf-8") as f:
        f.write("{oops")
    assert local.load_targets() == {}
    local.set_last_command_id("x")
    assert local.last_command_id() == "x"
