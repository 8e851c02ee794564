#!/usr/bin/env python3
"""
Tests for the on-disk working copy and baseline.
"""

import json

import pytest

from lrmsync.errors import CorruptSnapshotError
from lrmsync.snapshot import ResourceSnapshot
from lrmsync.storage import FileWorkingCopy, atomic_write_json


@pytest.fixture
def store(tmp_path):
    return FileWorkingCopy(str(tmp_path))


def test_fresh_working_copy_is_empty(store):
    assert len(store.load_snapshot()) == 0
    assert store.load_baseline() is None
    assert len(store.load_baseline_snapshot()) == 0


def test_save_and_load_working_copy(store):
    snapshot = ResourceSnapshot.from_mapping({"Greeting": "Hi"})
    store.save_snapshot(snapshot)
    assert store.load_snapshot().same_content(snapshot)
    assert not list(store.project_dir.glob(".*.tmp"))


def test_baseline_keeps_remote_revision(store):
    snapshot = ResourceSnapshot.from_mapping({"Greeting": "Hi"})
    store.save_baseline("srv-3", snapshot)

    assert store.load_baseline() == "srv-3"
    baseline = store.load_baseline_snapshot()
    assert baseline.revision == "srv-3"
    assert baseline.same_content(snapshot)


def test_tampered_baseline_is_corrupt(store):
    store.save_baseline("srv-3", ResourceSnapshot.from_mapping({"A": "1"}))
    state = json.loads(store.sync_state_path.read_text(encoding="utf-8"))
    state["revision"] = "srv-4"
    store.sync_state_path.write_text(json.dumps(state), encoding="utf-8")

    with pytest.raises(CorruptSnapshotError):
        store.load_baseline_snapshot()


def test_edited_baseline_content_is_corrupt(store):
    store.save_baseline("srv-3", ResourceSnapshot.from_mapping({"Greeting": "Hi"}))
    state = json.loads(store.sync_state_path.read_text(encoding="utf-8"))
    state["snapshot"]["entries"][0]["value"] = "TAMPERED"
    store.sync_state_path.write_text(json.dumps(state), encoding="utf-8")

    with pytest.raises(CorruptSnapshotError):
        store.load_baseline_snapshot()


def test_invalid_json_is_corrupt(store):
    store.resources_path.write_text("{", encoding="utf-8")
    with pytest.raises(CorruptSnapshotError):
        store.load_snapshot()


def test_atomic_write_replaces_whole_file(tmp_path):
    path = tmp_path / "nested" / "state.json"
    atomic_write_json(path, {"a": 1})
    atomic_write_json(path, {"b": 2})
    assert json.loads(path.read_text(encoding="utf-8")) == {"b": 2}
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]
