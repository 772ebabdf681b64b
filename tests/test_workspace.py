"""Tests for workspace paths, .gitignore management and atomic JSON writes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from editguard.core.workspace import Workspace, now_iso, parse_iso, write_json_atomic


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("src/main.py", "src/main.py"),
        ("src\\main.py", "src/main.py"),
        ("./src/./main.py", "src/main.py"),
        ("src/lib/../main.py", "src/main.py"),
        ("../outside.py", "../outside.py"),
        ("", ""),
    ],
)
def test_relpath_normalization(workspace: Workspace, raw: str, expected: str):
    assert workspace.relpath(raw) == expected


def test_relpath_absolute_paths(workspace: Workspace):
    inside = workspace.root / "pkg" / "mod.py"
    outside = workspace.root.parent / "other.py"
    assert workspace.relpath(inside) == "pkg/mod.py"
    assert workspace.relpath(str(outside)) == outside.as_posix()


def test_gitignore_left_alone_when_missing(workspace: Workspace):
    workspace.ensure_gitignore_entry()
    assert not (workspace.root / ".gitignore").exists()


def test_gitignore_entry_appended_once(workspace: Workspace):
    gitignore = workspace.root / ".gitignore"
    gitignore.write_text("node_modules/", encoding="utf-8")

    workspace.ensure_gitignore_entry()
    workspace.ensure_gitignore_entry()

    content = gitignore.read_text(encoding="utf-8")
    assert content == "node_modules/\n.editguard/\n"


def test_gitignore_entry_without_slash_is_recognized(workspace: Workspace):
    gitignore = workspace.root / ".gitignore"
    gitignore.write_text(".editguard\n", encoding="utf-8")
    workspace.ensure_gitignore_entry()
    assert gitignore.read_text(encoding="utf-8") == ".editguard\n"


def test_walk_files_skips_state_dir(workspace: Workspace):
    (workspace.root / "src").mkdir()
    (workspace.root / "src" / "a.py").write_text("a", encoding="utf-8")
    (workspace.root / "build").mkdir()
    (workspace.root / "build" / "out.bin").write_text("b", encoding="utf-8")
    (workspace.snapshots_dir / "index.json").write_text("{}", encoding="utf-8")

    everything = list(workspace.walk_files())
    pruned = list(workspace.walk_files(skip_dir=lambda rel: rel == "build"))

    assert everything == ["build/out.bin", "src/a.py"]
    assert pruned == ["src/a.py"]


def test_read_text_missing_file(workspace: Workspace):
    assert workspace.read_text("nope.txt") is None


def test_write_json_atomic(tmp_path: Path):
    target = tmp_path / "nested" / "data.json"
    write_json_atomic(target, {"ok": True})
    assert json.loads(target.read_text(encoding="utf-8")) == {"ok": True}
    assert not list(target.parent.glob("*.tmp"))


def test_timestamps_round_trip():
    stamp = now_iso()
    assert stamp.endswith("Z")
    assert parse_iso(stamp).tzinfo is not None
    assert parse_iso("2024-01-01T00:00:00").utcoffset().total_seconds() == 0
