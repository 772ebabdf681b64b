"""Tests for checkpoint capture, retention and pruning."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from editguard.services.checkpoints import CheckpointStore
from editguard.services.ignore import IgnoreMatcher


@pytest.fixture
def checkpoints(workspace):
    store = CheckpointStore(workspace, IgnoreMatcher(workspace))
    store.initialize()
    return store


def _record_files(store: CheckpointStore) -> list[str]:
    return sorted(
        p.name for p in store.directory.glob("*.json") if p.name != store.metadata_path.name
    )


def test_capture_carries_previous_files_forward(checkpoints, write_file):
    write_file("a.txt", "A1")
    write_file("b.txt", "B1")
    checkpoints.capture("s1", ["a.txt"])
    checkpoints.capture("s2", ["b.txt"])

    latest = checkpoints.load()
    assert latest.snapshot_id == "s2"
    assert latest.files == {"a.txt": "A1", "b.txt": "B1"}
    assert latest.metadata.total_files == 2
    assert (checkpoints.latest_dir / "a.txt").read_text(encoding="utf-8") == "A1"


def test_capture_drops_deleted_and_ignored_paths(checkpoints, workspace, write_file):
    write_file("a.txt", "A1")
    write_file("node_modules/x.js", "ignored")
    checkpoints.capture("s1", ["a.txt", "node_modules/x.js"])
    assert set(checkpoints.load().files) == {"a.txt"}

    workspace.abspath("a.txt").unlink()
    checkpoints.capture("s2", ["a.txt"])
    assert checkpoints.load().files == {}


def test_capture_content_override(checkpoints, write_file):
    write_file("a.txt", "on disk")
    checkpoints.capture("s1", ["a.txt", "gone.txt"], contents={"a.txt": "pinned", "gone.txt": None})
    assert checkpoints.load().files == {"a.txt": "pinned"}


def test_default_retention_keeps_only_latest(checkpoints, write_file):
    for n in range(5):
        write_file("a.txt", f"v{n}")
        checkpoints.capture(f"s{n}", ["a.txt"])

    assert len(_record_files(checkpoints)) == 1
    assert len(checkpoints.refs) == 1
    assert checkpoints.load().files["a.txt"] == "v4"


def test_keep_all_retains_every_checkpoint(workspace, write_file):
    store = CheckpointStore(workspace, IgnoreMatcher(workspace), keep_all=True)
    store.initialize()
    for n in range(5):
        write_file("a.txt", f"v{n}")
        store.capture(f"s{n}", ["a.txt"])

    assert len(_record_files(store)) == 5
    first = store.load(store.refs[0].id)
    assert first.files["a.txt"] == "v0"


def test_metadata_reload(workspace, checkpoints, write_file):
    write_file("a.txt", "A")
    checkpoint_id = checkpoints.capture("s1", ["a.txt"])

    again = CheckpointStore(workspace, IgnoreMatcher(workspace))
    again.initialize()
    assert again.latest_id == checkpoint_id
    assert again.load().files == {"a.txt": "A"}


def test_corrupt_metadata_starts_empty(workspace, checkpoints):
    checkpoints.metadata_path.write_text("[]", encoding="utf-8")
    again = CheckpointStore(workspace, IgnoreMatcher(workspace))
    again.initialize()
    assert again.refs == []
    assert again.load() is None


def test_prune_can_remove_latest(checkpoints, write_file):
    write_file("a.txt", "A")
    checkpoints.capture("s1", ["a.txt"])

    assert checkpoints.prune(datetime.now(UTC) - timedelta(days=1)) == []
    removed = checkpoints.prune(datetime.now(UTC) + timedelta(seconds=1))

    assert len(removed) == 1
    assert checkpoints.latest_id is None
    assert checkpoints.load() is None
    assert not checkpoints.latest_dir.exists()
    assert checkpoints.info()["count"] == 0
