"""Runtime seam the engine uses to apply diffs and write files in a workspace."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from editguard.errors import DiffApplyError, DiffParseError
from editguard.services.diff import apply_file_diff, canonical_path, parse_multi_file_diff
from editguard.utils.logger import get_logger

logger = get_logger("runtime")


@dataclass
class WriteResult:
    success: bool
    message: str = ""


@dataclass
class ApplyResult:
    success: bool
    message: str = ""
    changes_applied: int = 0


class Runtime(Protocol):
    async def read_file(self, path: str) -> str: ...
    async def write_file(self, path: str, content: str) -> WriteResult: ...
    async def apply_unified_diff(
        self, diff_text: str, base_dir: str | None = None
    ) -> ApplyResult:
        """Apply a multi-file unified diff relative to base_dir."""
        ...


class LocalRuntime:
    """Filesystem runtime rooted at a directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str, base_dir: str | None = None) -> Path:
        base = Path(base_dir) if base_dir else self.root
        candidate = Path(path)
        return candidate if candidate.is_absolute() else base / candidate

    async def read_file(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    async def write_file(self, path: str, content: str) -> WriteResult:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            return WriteResult(success=False, message=str(e))
        return WriteResult(success=True, message=f"Wrote {path}")

    async def apply_unified_diff(
        self, diff_text: str, base_dir: str | None = None
    ) -> ApplyResult:
        """Apply every section or none: all hunks are checked before any write."""
        try:
            sections = parse_multi_file_diff(diff_text)
        except DiffParseError as e:
            return ApplyResult(success=False, message=f"Invalid diff: {e}")
        if not sections:
            return ApplyResult(success=False, message="Diff has no file sections")

        planned: list[tuple[Path, str | None]] = []
        for section in sections:
            source = canonical_path(section.old_path)
            target = self._resolve(section.path, base_dir)
            current = None
            if source is not None:
                try:
                    current = self._resolve(source, base_dir).read_text(encoding="utf-8")
                except FileNotFoundError:
                    current = None
                except (OSError, UnicodeDecodeError) as e:
                    return ApplyResult(success=False, message=f"Cannot read {source}: {e}")
            try:
                planned.append((target, apply_file_diff(current, section)))
            except DiffApplyError as e:
                return ApplyResult(success=False, message=str(e))

        for target, content in planned:
            if content is None:
                target.unlink(missing_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        logger.debug("Applied diff", files=len(planned))
        return ApplyResult(
            success=True,
            message=f"Applied changes to {len(planned)} file(s)",
            changes_applied=len(planned),
        )
