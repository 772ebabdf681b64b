"""Shared pytest fixtures for all tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from editguard.config.schema import SnapshotConfig
from editguard.core.workspace import Workspace
from editguard.schemas import SnapshotOperation
from editguard.services.diff import generate_unified_diff
from editguard.services.manager import SnapshotManager


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    """Create an empty workspace with its bookkeeping directory."""
    root = tmp_path / "project"
    root.mkdir()
    ws = Workspace.at(root)
    ws.ensure_state_dir()
    return ws


@pytest.fixture
def make_manager(workspace: Workspace):
    """Factory for managers over the shared workspace; kwargs become config."""

    def _make(**config) -> SnapshotManager:
        return SnapshotManager(
            workspace.root, SnapshotConfig(**config) if config else None
        )

    return _make


@pytest.fixture
def write_file(workspace: Workspace):
    """Write a workspace file behind the engine's back."""

    def _write(relpath: str, content: str) -> Path:
        path = workspace.abspath(relpath)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def tracked_edit(workspace: Workspace):
    """Apply an edit to disk the way a tool would, then record it.

    Passing None as content deletes the file.
    """

    async def _edit(
        manager: SnapshotManager,
        relpath: str,
        content: str | None,
        tool: str = "write_file",
    ):
        path = workspace.abspath(relpath)
        old = path.read_text(encoding="utf-8") if path.exists() else None
        if content is None:
            path.unlink()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        diff = generate_unified_diff(old, content, relpath)
        return await manager.create_snapshot(
            SnapshotOperation(
                tool=tool,
                description=f"{tool} {relpath}",
                affected_files=[relpath],
                diff=diff,
            )
        )

    return _edit

