"""SnapshotManager: the single entry point tool layers call after each edit.

The manager wires the stores together and owns the ordering of every
mutating operation: continuity check, optional integration snapshot, snapshot
append, then checkpoint capture. All stores are synchronous; the manager's
public operations are coroutines so callers on an event loop can await them
alongside their own I/O.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from editguard.config import (
    ConfigManager,
    ConfigValidationError,
    SnapshotConfig,
    create_config_manager,
    validate_config,
)
from editguard.config.constants import INTEGRATION_TOOL_NAME, REVERSE_TOOL_NAME
from editguard.core.workspace import Workspace
from editguard.errors import ContinuityViolationError, EditGuardError, SnapshotError
from editguard.runtime import LocalRuntime, Runtime
from editguard.schemas import (
    EditHistory,
    HistoryQuery,
    Milestone,
    MilestoneResult,
    OperationContext,
    ReverseOptions,
    ReverseResult,
    SnapshotDiffResult,
    SnapshotMetadata,
    SnapshotOperation,
    SnapshotResult,
    UnknownChange,
    UnknownChangeReport,
    ValidationResult,
)
from editguard.services.checkpoints import CheckpointStore
from editguard.services.diff import (
    add_git_headers,
    count_diff_changes,
    reverse_diff,
    summarize_diff,
)
from editguard.services.hashing import read_file_state
from editguard.services.ignore import IgnoreMatcher
from editguard.services.milestones import MilestoneStore
from editguard.services.snapshots import SnapshotStore
from editguard.services.validation import (
    ContinuityValidator,
    OperationCheck,
    describe_violation,
    merged_drift_diff,
)
from editguard.utils.logger import get_logger

logger = get_logger("manager")

READ_FORMATS = ("unified", "git")


def _as_utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


class SnapshotManager:
    """Records tracked edits for one workspace and keeps their history honest.

    Args:
        workspace_root: Directory whose files are tracked.
        config: Settings layered over the defaults; ``.editguard/config.json``
            still overrides them when present.
    """

    def __init__(self, workspace_root: str | Path, config: SnapshotConfig | None = None):
        self.workspace = Workspace.at(workspace_root)
        overrides = config.model_dump() if config is not None else None
        self.config_manager: ConfigManager = create_config_manager(
            self.workspace.state_dir, overrides=overrides
        )
        self.config = config or SnapshotConfig()
        self.ignore = IgnoreMatcher(self.workspace, self.config)
        self.store = SnapshotStore(
            self.workspace,
            save_diff_files=self.config.save_diff_files,
            diff_file_format=self.config.diff_file_format,
        )
        self.checkpoints = CheckpointStore(
            self.workspace, self.ignore, keep_all=self.config.keep_all_checkpoints
        )
        self.milestones = MilestoneStore(self.workspace, self.store)
        self.validator = ContinuityValidator(
            self.workspace, self.store, self.checkpoints, self.ignore
        )
        self._initialized = False
        self._watching = False

    # ---- lifecycle ----
    async def initialize(self) -> None:
        if self._initialized:
            return
        self.workspace.ensure_state_dir()
        self.workspace.ensure_gitignore_entry()
        await self.config_manager.initialize()
        try:
            self._apply_config(self.config_manager.typed())
        except ConfigValidationError as e:
            logger.error("Invalid workspace config, using defaults", errors=e.errors)
            self._apply_config(self.config)
        self.store.rebuild_cache()
        if self.store.corrupted:
            logger.warning(
                "Snapshot index was corrupted; history starts empty",
                workspace=str(self.workspace.root),
            )
        self.checkpoints.initialize()
        self.milestones.initialize()
        self._initialized = True
        logger.info(
            "Snapshot manager initialized",
            workspace=str(self.workspace.root),
            snapshots=len(self.store.entries()),
            strategy=self.config.unknown_change_strategy,
        )

    def _apply_config(self, config: SnapshotConfig) -> None:
        self.config = config
        self.ignore.reload(config)
        self.store.save_diff_files = config.save_diff_files
        self.store.diff_file_format = config.diff_file_format
        self.checkpoints.keep_all = config.keep_all_checkpoints

    async def rebuild_snapshot_index(self) -> int:
        """Recreate index.json from the snapshot records on disk.

        Raises:
            ChainIntegrityError: If the records do not form an unbroken chain;
                the existing index is kept.
        """
        await self.initialize()
        self.store.rebuild_cache(scan_records=True)
        return len(self.store.entries())

    # ---- path handling ----
    def _split_paths(self, paths: list[str]) -> tuple[list[str], list[str]]:
        """Normalize and dedupe paths into (tracked, ignored)."""
        tracked: list[str] = []
        ignored: list[str] = []
        seen: set[str] = set()
        for raw in paths:
            relpath = self.workspace.relpath(raw)
            if relpath in seen:
                continue
            seen.add(relpath)
            if not relpath or Path(relpath).is_absolute() or relpath.split("/")[0] == "..":
                ignored.append(str(raw))
            elif self.ignore.is_ignored(relpath):
                ignored.append(relpath)
            else:
                tracked.append(relpath)
        return tracked, ignored

    def filter_ignored_files(self, paths: list[str]) -> list[str]:
        """Drop paths the ignore rules hide, keeping the caller's spelling."""
        return self.ignore.filter(paths)

    # ---- snapshots ----
    async def create_snapshot(
        self, operation: SnapshotOperation | dict[str, Any]
    ) -> SnapshotResult:
        """Record an already-applied operation at the head of the chain.

        Raises:
            SnapshotError: If the operation is malformed or touches only ignored files.
            ContinuityViolationError: Under the strict strategy when a touched
                file changed outside tracked operations. Nothing is written.
        """
        started = time.perf_counter()
        await self.initialize()
        if isinstance(operation, dict):
            try:
                operation = SnapshotOperation.model_validate(operation)
            except ValueError as e:
                raise SnapshotError(f"Invalid operation: {e}") from e

        tracked, ignored = self._split_paths(operation.affected_files)
        if not tracked:
            raise SnapshotError("All affected files are ignored by the snapshot system")

        check = self.validator.verify_operation(operation, tracked)
        warnings = list(check.warnings)
        integration_id = None
        unknown: list[UnknownChange] = []
        if self.config.detection_enabled and check.unknown_changes:
            unknown = check.unknown_changes
            strategy = self.config.unknown_change_strategy
            if strategy == "strict":
                logger.error(
                    "Rejecting snapshot on continuity violation",
                    tool=operation.tool,
                    files=[c.file_path for c in unknown],
                )
                raise ContinuityViolationError(describe_violation(unknown), unknown)
            if strategy == "auto-integrate":
                integration_id = self._integrate(check)
                warnings.append(
                    f"Integrated {len(unknown)} unknown change(s) as snapshot {integration_id}"
                )
            else:
                warnings.extend(
                    f"Unknown change in {c.file_path} ({c.change_type}): "
                    f"expected {c.expected_hash}, found {c.actual_hash}"
                    for c in unknown
                )

        reverse = None
        if operation.diff:
            inverted = reverse_diff(operation.diff)
            if inverted.success:
                reverse = inverted.diff
            else:
                warnings.append(f"Reverse diff unavailable: {inverted.error}")

        snapshot = self.store.append(
            operation,
            tracked_files=tracked,
            base_file_hashes=check.base_file_hashes,
            result_file_hashes=check.result_file_hashes,
            reverse_diff=reverse,
            metadata=self._metadata(operation, tracked, started),
        )
        try:
            self.checkpoints.capture(snapshot.id, tracked)
        except OSError as e:
            warnings.append(f"Checkpoint capture failed: {e}")
            logger.warning("Checkpoint capture failed", snapshot_id=snapshot.id, error=str(e))

        return SnapshotResult(
            snapshot_id=snapshot.id,
            sequence_number=snapshot.sequence_number,
            warnings=warnings,
            unknown_changes=unknown,
            integration_snapshot_id=integration_id,
            ignored_files=ignored,
        )

    def _metadata(
        self, operation: SnapshotOperation, tracked: list[str], started: float
    ) -> SnapshotMetadata:
        values = dict(operation.metadata)
        if "files_size_bytes" not in values:
            values["files_size_bytes"] = sum(
                len((self.workspace.read_text(p) or "").encode("utf-8"))
                for p in tracked
            )
        if "lines_changed" not in values:
            values["lines_changed"] = sum(count_diff_changes(operation.diff))
        values.setdefault(
            "execution_time_ms", round((time.perf_counter() - started) * 1000, 3)
        )
        return SnapshotMetadata.model_validate(values)

    def _integrate(self, check: OperationCheck) -> str:
        """Append a snapshot that records drift as if a tool had made it."""
        changes = check.unknown_changes
        paths = [c.file_path for c in changes]
        drift = merged_drift_diff(changes) or ""
        inverted = reverse_diff(drift) if drift else None
        snapshot = self.store.append(
            SnapshotOperation(
                tool=INTEGRATION_TOOL_NAME,
                description=f"Integrated {len(changes)} change(s) made outside tracked operations",
                affected_files=paths,
                diff=drift,
            ),
            tracked_files=paths,
            base_file_hashes={c.file_path: c.expected_hash for c in changes},
            result_file_hashes={c.file_path: c.actual_hash for c in changes},
            reverse_diff=inverted.diff if inverted and inverted.success else None,
            metadata=SnapshotMetadata(
                lines_changed=sum(count_diff_changes(drift)) if drift else 0
            ),
        )
        try:
            self.checkpoints.capture(
                snapshot.id, paths, contents={p: check.base_contents.get(p) for p in paths}
            )
        except OSError as e:
            logger.warning("Checkpoint capture failed", snapshot_id=snapshot.id, error=str(e))
        logger.info(
            "Integrated unknown changes",
            snapshot_id=snapshot.id,
            files=paths,
            evidence=[c.evidence for c in changes],
        )
        return snapshot.id

    async def read_snapshot_diff(
        self, snapshot_id: str, fmt: str = "unified"
    ) -> SnapshotDiffResult:
        await self.initialize()
        if fmt not in READ_FORMATS:
            return SnapshotDiffResult(
                success=False,
                snapshot_id=snapshot_id,
                message=f"Unknown diff format '{fmt}' (expected one of {', '.join(READ_FORMATS)})",
            )
        snapshot = self.store.get(snapshot_id)
        if snapshot is None:
            return SnapshotDiffResult(
                success=False, snapshot_id=snapshot_id, message="Snapshot not found"
            )
        diff = snapshot.diff
        reverse = snapshot.reverse_diff
        if fmt == "git":
            diff = add_git_headers(diff) if diff else diff
            reverse = add_git_headers(reverse) if reverse else reverse
        return SnapshotDiffResult(
            success=True,
            snapshot_id=snapshot_id,
            diff=diff,
            reverse_diff=reverse,
            summary=summarize_diff(snapshot.diff) if snapshot.diff else "No changes",
        )

    async def get_edit_history(
        self, query: HistoryQuery | None = None, **filters: Any
    ) -> EditHistory:
        await self.initialize()
        if query is None:
            query = HistoryQuery(**filters)
        elif filters:
            query = query.model_copy(update=filters)
        return self.store.query(query, self.config.history_default_limit)

    async def get_snapshot_ids_by_sequence_range(self, start: int, end: int) -> list[str]:
        """Ids for start..end inclusive; a broken chain raises ChainIntegrityError."""
        await self.initialize()
        return [e.id for e in self.store.entries_in_sequence_range(start, end)]

    # ---- reversal ----
    async def reverse_op(
        self,
        snapshot_id: str,
        options: ReverseOptions | None = None,
        runtime: Runtime | None = None,
    ) -> ReverseResult:
        """Undo a recorded operation and record the undo as its own snapshot."""
        await self.initialize()
        options = options or ReverseOptions()
        snapshot = self.store.get(snapshot_id)
        if snapshot is None:
            return ReverseResult(
                success=False,
                message="Snapshot not found",
                reversed_snapshot_id=snapshot_id,
            )
        reverse = snapshot.reverse_diff
        if not reverse and snapshot.diff:
            inverted = reverse_diff(snapshot.diff)
            reverse = inverted.diff if inverted.success else None
        if not reverse:
            return ReverseResult(
                success=False,
                message="Snapshot has no reversible diff",
                reversed_snapshot_id=snapshot_id,
            )

        conflicts = []
        if not options.force:
            for relpath in snapshot.tracked_files:
                expected = snapshot.result_file_hashes.get(relpath)
                actual = read_file_state(self.workspace, relpath).hash
                if expected is not None and actual != expected:
                    conflicts.append(
                        f"{relpath} changed since snapshot {snapshot.sequence_number} "
                        f"(expected {expected}, found {actual})"
                    )
        if conflicts:
            logger.warning("Reverse blocked by later changes", snapshot_id=snapshot_id)
            return ReverseResult(
                success=False,
                message="Files changed since the snapshot; use force to reverse anyway",
                reversed_snapshot_id=snapshot_id,
                diff=reverse,
                conflicts=conflicts,
            )
        if options.dry_run:
            return ReverseResult(
                success=True,
                message="Dry run: reverse diff not applied",
                reversed_snapshot_id=snapshot_id,
                dry_run=True,
                diff=reverse,
            )

        runtime = runtime or LocalRuntime(self.workspace.root)
        applied = await runtime.apply_unified_diff(reverse, base_dir=str(self.workspace.root))
        if not applied.success:
            return ReverseResult(
                success=False,
                message=f"Failed to apply reverse diff: {applied.message}",
                reversed_snapshot_id=snapshot_id,
                diff=reverse,
            )

        try:
            result = await self.create_snapshot(
                SnapshotOperation(
                    tool=REVERSE_TOOL_NAME,
                    description=f"Reverse snapshot {snapshot.sequence_number}",
                    affected_files=snapshot.tracked_files,
                    diff=reverse,
                    context=OperationContext(
                        tool_params={"reversed_snapshot_id": snapshot_id}
                    ),
                )
            )
        except EditGuardError as e:
            logger.error("Reverse applied but not recorded", snapshot_id=snapshot_id, error=str(e))
            return ReverseResult(
                success=False,
                message=f"Reverse applied but snapshot was rejected: {e}",
                reversed_snapshot_id=snapshot_id,
                diff=reverse,
                changes_applied=applied.changes_applied,
            )
        return ReverseResult(
            success=True,
            message=f"Reversed snapshot {snapshot.sequence_number}",
            reversed_snapshot_id=snapshot_id,
            snapshot_id=result.snapshot_id,
            diff=reverse,
            changes_applied=applied.changes_applied,
        )

    # ---- milestones ----
    async def create_milestone(
        self,
        snapshot_ids: list[str],
        title: str,
        description: str = "",
        tags: list[str] | None = None,
    ) -> MilestoneResult:
        await self.initialize()
        return self.milestones.create(snapshot_ids, title, description, tags)

    async def create_milestone_by_range(
        self,
        title: str,
        description: str = "",
        end_snapshot_id: str | None = None,
        tags: list[str] | None = None,
    ) -> MilestoneResult:
        await self.initialize()
        return self.milestones.create_by_range(title, description, end_snapshot_id, tags)

    async def get_milestones(
        self, include_diffs: bool = False, tags: list[str] | None = None
    ) -> list[Milestone]:
        await self.initialize()
        return self.milestones.list(include_diffs=include_diffs, tags=tags)

    # ---- detection ----
    async def detect_unknown_modifications(
        self, paths: list[str] | None = None
    ) -> UnknownChangeReport:
        """Report drift for paths, or for everything known plus new workspace files."""
        await self.initialize()
        if paths is None:
            relpaths = self.validator.candidate_paths(self.config.scan_workspace_on_detect)
        else:
            relpaths, _ = self._split_paths(paths)
        return self.validator.detect(relpaths)

    async def validate_file_state_before_snapshot(
        self, paths: list[str], strict_mode: bool | None = None
    ) -> ValidationResult:
        """Check paths for drift before a tool edits them.

        ``strict_mode=True`` forces strict evaluation; ``False`` downgrades a
        strict configuration to warn; None follows the configured strategy.
        """
        await self.initialize()
        strategy = self.config.unknown_change_strategy
        if strict_mode is True:
            strategy = "strict"
        elif strict_mode is False and strategy == "strict":
            strategy = "warn"
        if strict_mode is not True and not self.config.detection_enabled:
            return ValidationResult(success=True, strategy="ignore")
        relpaths, _ = self._split_paths(paths)
        return self.validator.validate_before(relpaths, strategy)

    # ---- maintenance ----
    async def cleanup(self, older_than: datetime | None = None) -> list[str]:
        """Delete snapshots older than the cutoff (default: retention days)."""
        await self.initialize()
        cutoff = (
            _as_utc(older_than)
            if older_than is not None
            else datetime.now(UTC) - timedelta(days=self.config.snapshot_retention_days)
        )
        return self.store.cleanup(cutoff)

    async def cleanup_old_checkpoints(self, older_than: datetime | None = None) -> list[str]:
        await self.initialize()
        cutoff = (
            _as_utc(older_than)
            if older_than is not None
            else datetime.now(UTC) - timedelta(days=self.config.max_checkpoint_age_days)
        )
        return self.checkpoints.prune(cutoff)

    async def get_cache_stats(self) -> dict[str, Any]:
        await self.initialize()
        latest_milestone = self.milestones.latest()
        return {
            "snapshots": self.store.stats(),
            "checkpoints": self.checkpoints.info(),
            "milestones": {
                "count": len(self.milestones.entries),
                "latest_milestone_id": latest_milestone.id if latest_milestone else None,
                "next_start_sequence_number": self.milestones.next_start(),
            },
            "ignore_rules": len(self.ignore.rules),
        }

    async def get_current_state(self) -> dict[str, Any]:
        await self.initialize()
        latest = self.store.latest()
        return {
            "workspace": str(self.workspace.root),
            "latest_snapshot_id": latest.id if latest else None,
            "sequence_number": self.store.head()[0],
            "latest_checkpoint_id": self.checkpoints.latest_id,
            "file_hashes": self.store.current_file_hashes(),
            "strategy": self.config.unknown_change_strategy,
            "detection_enabled": self.config.detection_enabled,
        }

    # ---- configuration and ignore rules ----
    async def update_config(self, **changes: Any) -> SnapshotConfig:
        """Validate and persist changes to the workspace config.

        Raises:
            ConfigValidationError: If the result would be invalid; nothing is saved.
        """
        await self.initialize()
        await self.config_manager.update(changes)
        self._apply_config(self.config_manager.typed())
        return self.config

    async def watch_config(self) -> None:
        """Re-apply config.json and ignore rules whenever the file changes."""
        await self.initialize()
        if self._watching:
            return
        self.config_manager.register_change_callback(self._on_config_changed)
        await self.config_manager.start_watching()
        self._watching = True

    async def stop_watching_config(self) -> None:
        if not self._watching:
            return
        await self.config_manager.stop_watching()
        self._watching = False

    def _on_config_changed(self, new_config: dict[str, Any]) -> None:
        try:
            self._apply_config(validate_config(new_config))
        except ConfigValidationError as e:
            logger.error("Ignoring invalid config change", errors=e.errors)
            return
        logger.info(
            "Config change applied",
            strategy=self.config.unknown_change_strategy,
            keep_all_checkpoints=self.config.keep_all_checkpoints,
        )

    def reload_ignore_rules(self) -> None:
        self.ignore.reload()

    def create_default_snapshot_ignore(self) -> bool:
        return self.ignore.create_default_file()

    def get_ignore_info(self) -> dict[str, Any]:
        return self.ignore.info()
