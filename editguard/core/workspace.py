"""Workspace and bookkeeping-directory management.

A Workspace owns every path decision: where the bookkeeping directory lives,
how caller-supplied paths are normalized to workspace-relative POSIX form, and
how JSON state is written atomically.
"""

from __future__ import annotations

import json
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from editguard.config.constants import (
    CHECKPOINTS_DIR_NAME,
    ID_LENGTH,
    IGNORE_FILE_NAME,
    MILESTONES_DIR_NAME,
    SNAPSHOTS_DIR_NAME,
    STATE_DIR_NAME,
)
from editguard.utils.logger import get_logger

logger = get_logger("workspace")


def now_iso() -> str:
    # Use Z suffix for UTC to simplify client parsing
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    # Naive timestamps from callers are taken as UTC
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def new_id() -> str:
    return uuid.uuid4().hex[:ID_LENGTH]


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file next to path, then swap it in."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp_path.replace(path)


@dataclass
class Workspace:
    """A tracked directory tree plus its hidden bookkeeping directory.

    Attributes:
        root: Absolute path to the workspace.
        state_dir: Absolute path to the bookkeeping directory.
    """

    root: Path
    state_dir: Path

    @classmethod
    def at(cls, root: str | Path) -> Workspace:
        root_path = Path(root).resolve()
        return cls(root=root_path, state_dir=root_path / STATE_DIR_NAME)

    @property
    def snapshots_dir(self) -> Path:
        return self.state_dir / SNAPSHOTS_DIR_NAME

    @property
    def milestones_dir(self) -> Path:
        return self.state_dir / MILESTONES_DIR_NAME

    @property
    def checkpoints_dir(self) -> Path:
        return self.state_dir / CHECKPOINTS_DIR_NAME

    @property
    def ignore_file(self) -> Path:
        return self.root / IGNORE_FILE_NAME

    def ensure_state_dir(self) -> None:
        """Create the bookkeeping directory tree."""
        for directory in (
            self.state_dir,
            self.snapshots_dir,
            self.milestones_dir,
            self.checkpoints_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def ensure_gitignore_entry(self) -> None:
        """Ensure the bookkeeping directory is listed in .gitignore.

        Only touches an existing .gitignore; a workspace without git stays as is.
        """
        gitignore_path = self.root / ".gitignore"
        entry = STATE_DIR_NAME
        if not gitignore_path.exists():
            return
        try:
            content = gitignore_path.read_text(encoding="utf-8")
            if any(
                line.strip() in (entry, f"{entry}/") for line in content.splitlines()
            ):
                return
            if content and not content.endswith("\n"):
                content += "\n"
            gitignore_path.write_text(f"{content}{entry}/\n", encoding="utf-8")
            logger.info("Added bookkeeping dir to .gitignore", path=str(gitignore_path))
        except OSError as e:
            logger.warning(
                "Failed to update .gitignore", error=str(e), path=str(gitignore_path)
            )

    def relpath(self, path: str | Path) -> str:
        """Normalize a caller path to workspace-relative POSIX form.

        Absolute paths outside the workspace are kept absolute so they never
        collide with a relative path of the same name.
        """
        raw = str(path).replace("\\", "/")
        candidate = Path(raw)
        if candidate.is_absolute():
            try:
                raw = candidate.resolve().relative_to(self.root).as_posix()
            except ValueError:
                return candidate.as_posix()
        parts: list[str] = []
        for part in PurePosixPath(raw).parts:
            if part in ("", "."):
                continue
            if part == ".." and parts:
                parts.pop()
                continue
            parts.append(part)
        return "/".join(parts)

    def abspath(self, relpath: str) -> Path:
        return self.root / relpath

    def read_text(self, relpath: str) -> str | None:
        """Read a workspace file as UTF-8, or None when it cannot be read."""
        try:
            return self.abspath(relpath).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read workspace file", path=relpath, error=str(e))
            return None

    def walk_files(self, skip_dir: Callable[[str], bool] | None = None):
        """Yield relative POSIX paths of every regular file.

        The bookkeeping directory is never entered; ``skip_dir`` prunes other
        directories by their relative path.
        """
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            kept = []
            for d in sorted(dirnames):
                full = current / d
                if full == self.state_dir:
                    continue
                if skip_dir and skip_dir(full.relative_to(self.root).as_posix()):
                    continue
                kept.append(d)
            dirnames[:] = kept
            for name in sorted(filenames):
                yield (current / name).relative_to(self.root).as_posix()
