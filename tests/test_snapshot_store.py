"""Tests for the snapshot log, its index cache and recovery paths."""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime, timedelta

import pytest

from editguard.errors import ChainIntegrityError, SnapshotError
from editguard.schemas import HistoryQuery, SnapshotMetadata, SnapshotOperation
from editguard.services.diff import generate_unified_diff
from editguard.services.snapshots import SnapshotStore, verify_chain


def _append(store: SnapshotStore, n: int, tool: str = "write_file", path: str | None = None):
    path = path or f"file{n}.txt"
    return store.append(
        SnapshotOperation(
            tool=tool,
            affected_files=[path],
            diff=generate_unified_diff(f"v{n - 1}\n", f"v{n}\n", path),
        ),
        tracked_files=[path],
        base_file_hashes={path: f"base{n}"},
        result_file_hashes={path: f"result{n}"},
        reverse_diff=None,
        metadata=SnapshotMetadata(),
    )


@pytest.fixture
def store(workspace):
    s = SnapshotStore(workspace)
    s.rebuild_cache()
    return s


def test_sequence_and_chain_assigned_by_store(store):
    snapshots = [_append(store, n) for n in range(1, 6)]
    entries = store.entries()

    assert [e.sequence_number for e in entries] == [1, 2, 3, 4, 5]
    assert entries[0].previous_snapshot_id is None
    for prev, entry in zip(snapshots, snapshots[1:]):
        assert entry.previous_snapshot_id == prev.id
    assert verify_chain(entries) == []


def test_record_layout_and_diff_companion(store):
    snapshot = _append(store, 1)
    entry = store.entry(snapshot.id)

    assert re.fullmatch(r"\d{4}/\d{2}/\d{2}/\d{6}_[0-9a-f]{16}\.json", entry.record_path)
    assert (store.directory / entry.record_path).exists()
    record = store.get(snapshot.id)
    assert record.diff_path is not None
    companion = (store.directory / record.diff_path).read_text(encoding="utf-8")
    assert companion.startswith(f"# Diff for snapshot {snapshot.id}")
    assert "```diff\n--- a/file1.txt" in companion


def test_diff_companion_disabled(workspace):
    store = SnapshotStore(workspace, save_diff_files=False)
    store.rebuild_cache()
    snapshot = _append(store, 1)
    assert store.get(snapshot.id).diff_path is None
    assert not list(store.directory.glob("*/*/*/diffs"))


def test_index_survives_restart(workspace, store):
    for n in range(1, 4):
        _append(store, n, path="shared.txt")

    reloaded = SnapshotStore(workspace)
    reloaded.rebuild_cache()

    assert [e.id for e in reloaded.entries()] == [e.id for e in store.entries()]
    assert reloaded.expected_hash("shared.txt") == "result3"


def test_corrupt_index_starts_blank_then_rebuilds_from_records(workspace, store):
    ids = [_append(store, n).id for n in range(1, 4)]
    store.index_path.write_text("{not json", encoding="utf-8")

    damaged = SnapshotStore(workspace)
    damaged.rebuild_cache()
    assert damaged.corrupted is True
    assert damaged.entries() == []
    assert (damaged.directory / "index.corrupt.json").exists()

    damaged.rebuild_cache(scan_records=True)
    assert [e.id for e in damaged.entries()] == ids
    assert damaged.expected_hash("file3.txt") == "result3"
    assert json.loads(damaged.index_path.read_text(encoding="utf-8"))["snapshots"]


def test_orphan_record_is_recovered_by_full_rebuild(workspace, store):
    _append(store, 1)
    store.index_path.unlink()

    fresh = SnapshotStore(workspace)
    fresh.rebuild_cache()
    assert fresh.entries() == []
    fresh.rebuild_cache(scan_records=True)
    assert len(fresh.entries()) == 1


def test_sequence_range_detects_gap(store):
    snapshots = [_append(store, n) for n in range(1, 6)]
    store.remove([snapshots[3].id])

    assert [e.sequence_number for e in store.entries()] == [1, 2, 3, 5]
    assert [e.id for e in store.entries_in_sequence_range(1, 3)] == [
        s.id for s in snapshots[:3]
    ]
    with pytest.raises(ChainIntegrityError) as exc_info:
        store.entries_in_sequence_range(1, 5)
    assert "missing 4" in str(exc_info.value)


def test_remove_deletes_record_and_companions(store):
    snapshot = _append(store, 1)
    record = store.get(snapshot.id)
    record_file = store.directory / store.entry(snapshot.id).record_path

    assert store.remove([snapshot.id, "unknown"]) == [snapshot.id]
    assert not record_file.exists()
    assert not (store.directory / record.diff_path).exists()
    assert store.get(snapshot.id) is None


def test_cleanup_by_age(store):
    for n in range(1, 4):
        _append(store, n)
    assert store.cleanup(datetime.now(UTC) - timedelta(days=1)) == []
    removed = store.cleanup(datetime.now(UTC) + timedelta(seconds=1))
    assert len(removed) == 3
    assert store.entries() == []


def test_sequence_continues_after_cleanup_removes_everything(workspace, store):
    last = [_append(store, n) for n in range(1, 4)][-1]
    store.cleanup(datetime.now(UTC) + timedelta(seconds=1))
    assert store.entries() == []
    assert store.head() == (3, last.id)

    reloaded = SnapshotStore(workspace)
    reloaded.rebuild_cache()
    assert reloaded.head() == (3, last.id)

    following = _append(reloaded, 4)
    assert following.sequence_number == 4
    assert following.previous_snapshot_id == last.id
    index = json.loads(reloaded.index_path.read_text(encoding="utf-8"))
    assert index["head"] == {"last_sequence_number": 4, "last_snapshot_id": following.id}


def test_index_without_head_continues_from_latest_entry(workspace, store):
    last = [_append(store, n) for n in range(1, 3)][-1]
    data = json.loads(store.index_path.read_text(encoding="utf-8"))
    del data["head"]
    store.index_path.write_text(json.dumps(data), encoding="utf-8")

    reloaded = SnapshotStore(workspace)
    reloaded.rebuild_cache()
    assert reloaded.head() == (2, last.id)
    assert _append(reloaded, 3).sequence_number == 3


def test_rebuild_from_records_rejects_duplicate_sequence(workspace, store):
    snapshots = [_append(store, n) for n in range(1, 3)]
    record_path = store.directory / store.entry(snapshots[1].id).record_path
    twin = json.loads(record_path.read_text(encoding="utf-8"))
    twin["id"] = "f" * 16
    record_path.with_name(f"{record_path.stem[:6]}_{twin['id']}.json").write_text(
        json.dumps(twin), encoding="utf-8"
    )
    index_before = store.index_path.read_text(encoding="utf-8")

    with pytest.raises(ChainIntegrityError) as exc_info:
        store.rebuild_cache(scan_records=True)

    assert "Duplicate sequence number 2" in str(exc_info.value)
    assert store.corrupted is True
    assert store.index_path.read_text(encoding="utf-8") == index_before
    assert [e.id for e in store.entries()] == [s.id for s in snapshots]


def test_history_pagination_with_cursor(store):
    ids = [_append(store, n).id for n in range(1, 6)]

    first = store.query(HistoryQuery(limit=2))
    assert [e.id for e in first.snapshots] == [ids[4], ids[3]]
    assert first.has_more is True
    assert first.total == 5

    second = store.query(HistoryQuery(limit=2, cursor=first.next_cursor))
    assert [e.id for e in second.snapshots] == [ids[2], ids[1]]

    last = store.query(HistoryQuery(limit=2, cursor=second.next_cursor))
    assert [e.id for e in last.snapshots] == [ids[0]]
    assert last.has_more is False
    assert last.next_cursor is None


def test_history_filters(store):
    _append(store, 1, tool="write_file", path="src/a.py")
    _append(store, 2, tool="replace_in_file", path="src/b.py")
    _append(store, 3, tool="write_file", path="docs/c.md")

    by_tool = store.query(HistoryQuery(tool_filter="WRITE_FILE"))
    assert [e.affected_files for e in by_tool.snapshots] == [["docs/c.md"], ["src/a.py"]]

    by_file = store.query(HistoryQuery(file_filter="src/"))
    assert by_file.total == 2

    future = (datetime.now(UTC) + timedelta(hours=1)).isoformat()
    assert store.query(HistoryQuery(since=future)).total == 0


def test_history_unknown_cursor(store):
    _append(store, 1)
    with pytest.raises(SnapshotError):
        store.query(HistoryQuery(cursor="does-not-exist"))


def test_stats_report_chain_state(store):
    _append(store, 1)
    _append(store, 2)
    stats = store.stats()
    assert stats["total_snapshots"] == 2
    assert stats["latest_sequence_number"] == 2
    assert stats["chain_issues"] == []
    assert stats["cache_corrupted"] is False
