"""Full-content checkpoints captured after each recorded snapshot.

Layout under ``<state>/checkpoints``::

    checkpoint-metadata.json   {"checkpoints": [...], "latest_checkpoint_id": ...}
    <id>.json                  full Checkpoint record
    latest/<relpath>           plain-file mirror of the newest checkpoint

Each capture carries the previous checkpoint's files forward and refreshes the
captured paths, so the newest checkpoint alone holds the last known content of
every tracked file.
"""

from __future__ import annotations

import json
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from editguard.config.constants import (
    CHECKPOINT_METADATA_FILE_NAME,
    LATEST_CHECKPOINT_DIR_NAME,
)
from editguard.core.workspace import Workspace, new_id, now_iso, parse_iso, write_json_atomic
from editguard.schemas import Checkpoint, CheckpointMetadata, CheckpointRef
from editguard.services.ignore import IgnoreMatcher
from editguard.utils.logger import get_logger

logger = get_logger("checkpoints")


class CheckpointStore:
    def __init__(
        self,
        workspace: Workspace,
        ignore: IgnoreMatcher,
        *,
        keep_all: bool = False,
    ):
        self.workspace = workspace
        self.ignore = ignore
        self.keep_all = keep_all
        self.refs: list[CheckpointRef] = []
        self.latest_id: str | None = None

    @property
    def directory(self) -> Path:
        return self.workspace.checkpoints_dir

    @property
    def metadata_path(self) -> Path:
        return self.directory / CHECKPOINT_METADATA_FILE_NAME

    @property
    def latest_dir(self) -> Path:
        return self.directory / LATEST_CHECKPOINT_DIR_NAME

    def record_path(self, checkpoint_id: str) -> Path:
        return self.directory / f"{checkpoint_id}.json"

    def initialize(self) -> None:
        """Load checkpoint metadata; unreadable metadata starts an empty ladder."""
        self.directory.mkdir(parents=True, exist_ok=True)
        self.refs = []
        self.latest_id = None
        if not self.metadata_path.exists():
            return
        try:
            data = json.loads(self.metadata_path.read_text(encoding="utf-8"))
            self.refs = [CheckpointRef.model_validate(r) for r in data.get("checkpoints", [])]
            self.latest_id = data.get("latest_checkpoint_id")
        except (OSError, ValueError, ValidationError, AttributeError) as e:
            logger.warning(
                "Checkpoint metadata unreadable, starting empty",
                path=str(self.metadata_path),
                error=str(e),
            )
            self.refs = []
            self.latest_id = None

    def _save_metadata(self) -> None:
        write_json_atomic(
            self.metadata_path,
            {
                "checkpoints": [r.model_dump(mode="json") for r in self.refs],
                "latest_checkpoint_id": self.latest_id,
            },
        )

    def capture(
        self,
        snapshot_id: str,
        paths: list[str],
        contents: dict[str, str | None] | None = None,
    ) -> str:
        """Store current content of paths on top of the previous checkpoint.

        ``contents`` pins the stored content of specific paths instead of
        reading them from disk; None marks a path as absent.
        """
        started = time.perf_counter()
        previous = self.load()
        files: dict[str, str] = {}
        if previous is not None:
            files = {p: c for p, c in previous.files.items() if not self.ignore.is_ignored(p)}

        contents = contents or {}
        for relpath in self.ignore.filter(paths):
            if relpath in contents:
                if contents[relpath] is None:
                    files.pop(relpath, None)
                else:
                    files[relpath] = contents[relpath]
                continue
            try:
                files[relpath] = self.workspace.abspath(relpath).read_text(encoding="utf-8")
            except FileNotFoundError:
                files.pop(relpath, None)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping file in checkpoint", path=relpath, error=str(e))
                files.pop(relpath, None)

        checkpoint = Checkpoint(
            id=new_id(),
            timestamp=now_iso(),
            snapshot_id=snapshot_id,
            files=files,
            metadata=CheckpointMetadata(
                total_files=len(files),
                total_size_bytes=sum(len(c.encode("utf-8")) for c in files.values()),
                creation_time_ms=round((time.perf_counter() - started) * 1000, 3),
            ),
        )
        write_json_atomic(self.record_path(checkpoint.id), checkpoint.model_dump(mode="json"))
        self._mirror_latest(checkpoint)

        ref = CheckpointRef(
            id=checkpoint.id, timestamp=checkpoint.timestamp, snapshot_id=snapshot_id
        )
        superseded = [] if self.keep_all else list(self.refs)
        self.refs = self.refs + [ref] if self.keep_all else [ref]
        self.latest_id = checkpoint.id
        self._save_metadata()
        for old in superseded:
            self.record_path(old.id).unlink(missing_ok=True)

        logger.debug(
            "Checkpoint captured",
            checkpoint_id=checkpoint.id,
            snapshot_id=snapshot_id,
            files=len(files),
        )
        return checkpoint.id

    def _mirror_latest(self, checkpoint: Checkpoint | None) -> None:
        if self.latest_dir.exists():
            shutil.rmtree(self.latest_dir)
        if checkpoint is None:
            return
        for relpath, content in checkpoint.files.items():
            target = self.latest_dir / relpath
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
            except OSError as e:
                logger.warning("Failed to mirror checkpoint file", path=relpath, error=str(e))

    def load(self, checkpoint_id: str | None = None) -> Checkpoint | None:
        """Load a checkpoint by id, or the latest one when id is omitted."""
        checkpoint_id = checkpoint_id or self.latest_id
        if checkpoint_id is None:
            return None
        path = self.record_path(checkpoint_id)
        if not path.exists():
            return None
        try:
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Checkpoint unreadable", checkpoint_id=checkpoint_id, error=str(e))
            return None

    def prune(self, older_than: datetime) -> list[str]:
        """Delete checkpoints captured before the cutoff, the latest included."""
        removed = [r for r in self.refs if parse_iso(r.timestamp) < older_than]
        if not removed:
            return []
        removed_ids = {r.id for r in removed}
        self.refs = [r for r in self.refs if r.id not in removed_ids]
        if self.latest_id in removed_ids:
            self.latest_id = self.refs[-1].id if self.refs else None
            self._mirror_latest(self.load())
        self._save_metadata()
        for ref in removed:
            self.record_path(ref.id).unlink(missing_ok=True)
        logger.info("Pruned checkpoints", removed=len(removed), remaining=len(self.refs))
        return [r.id for r in removed]

    def info(self) -> dict[str, Any]:
        sizes = [
            self.record_path(r.id).stat().st_size
            for r in self.refs
            if self.record_path(r.id).exists()
        ]
        return {
            "count": len(self.refs),
            "latest_checkpoint_id": self.latest_id,
            "keep_all": self.keep_all,
            "disk_bytes": sum(sizes),
        }
