"""Continuity checks and unknown-change detection.

Two baselines exist for a tracked path: the hash the snapshot chain expects
(the last recorded result hash) and the content kept in the latest
checkpoint. The chain hash decides whether a path drifted; the checkpoint
content, when it still matches that hash, is what lets a drift be shown as a
real diff instead of a bare hash mismatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from editguard.core.workspace import Workspace, parse_iso
from editguard.errors import DiffApplyError, DiffParseError
from editguard.schemas import (
    Checkpoint,
    SnapshotOperation,
    UnknownChange,
    UnknownChangeReport,
    ValidationResult,
)
from editguard.services.checkpoints import CheckpointStore
from editguard.services.diff import (
    apply_file_diff,
    find_section,
    generate_unified_diff,
    merge_diffs,
    parse_multi_file_diff,
    reverse_file_diff,
)
from editguard.services.hashing import EMPTY_HASH, FileState, content_hash, read_file_state
from editguard.services.ignore import IgnoreMatcher
from editguard.services.snapshots import SnapshotStore
from editguard.utils.logger import get_logger

logger = get_logger("validation")


@dataclass
class OperationCheck:
    """Observed pre/post state of the paths a tracked operation touched."""

    base_file_hashes: dict[str, str] = field(default_factory=dict)
    result_file_hashes: dict[str, str] = field(default_factory=dict)
    # Content each path held right before the operation, None when absent
    base_contents: dict[str, str | None] = field(default_factory=dict)
    unknown_changes: list[UnknownChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def describe_violation(changes: list[UnknownChange]) -> str:
    lines = [f"State continuity violation detected in {len(changes)} file(s):"]
    for change in changes:
        lines.append(
            f"  {change.file_path} ({change.change_type}): "
            f"Expected file hash {change.expected_hash}, "
            f"Actual file hash {change.actual_hash}"
        )
    lines.append(
        "These files changed outside the snapshot tools. Route edits through "
        "them, or switch the strategy to warn or auto-integrate, to keep "
        "history consistency."
    )
    return "\n".join(lines)


def merged_drift_diff(changes: list[UnknownChange]) -> str | None:
    diffs = [c.diff for c in changes if c.diff]
    if not diffs:
        return None
    return merge_diffs(diffs).merged_diff or None


class ContinuityValidator:
    def __init__(
        self,
        workspace: Workspace,
        store: SnapshotStore,
        checkpoints: CheckpointStore,
        ignore: IgnoreMatcher,
    ):
        self.workspace = workspace
        self.store = store
        self.checkpoints = checkpoints
        self.ignore = ignore

    def _baseline(
        self, relpath: str, checkpoint: Checkpoint | None
    ) -> tuple[str | None, str | None]:
        """Expected hash for the path and the checkpoint content backing it.

        The content is only returned when it hashes to the expected value.
        """
        expected = self.store.expected_hash(relpath)
        prior = checkpoint.files.get(relpath) if checkpoint else None
        if expected is None and prior is not None:
            expected = content_hash(prior)
        if prior is not None and content_hash(prior) != expected:
            prior = None
        return expected, prior

    def _change(
        self,
        relpath: str,
        expected: str,
        prior: str | None,
        observed: str | None,
        observed_hash: str,
    ) -> UnknownChange:
        if observed is None:
            change_type = "deleted"
        elif expected == EMPTY_HASH and prior is None:
            change_type = "created"
        else:
            change_type = "modified"

        diff = None
        evidence = "hash-only"
        if change_type == "created":
            diff = generate_unified_diff(None, observed, relpath)
            evidence = "new-file"
        elif prior is not None:
            diff = generate_unified_diff(prior, observed, relpath)
            evidence = "checkpoint"
        return UnknownChange(
            file_path=relpath,
            change_type=change_type,
            expected_hash=expected,
            actual_hash=observed_hash,
            diff=diff or None,
            evidence=evidence,
        )

    def _created_since(self, state: FileState, checkpoint: Checkpoint | None) -> bool:
        """An untracked file counts as created when it appeared after the last capture."""
        if checkpoint is None or not state.exists:
            return False
        try:
            mtime = self.workspace.abspath(state.path).stat().st_mtime
        except OSError:
            return False
        return mtime > parse_iso(checkpoint.timestamp).timestamp()

    def candidate_paths(self, scan_workspace: bool) -> list[str]:
        checkpoint = self.checkpoints.load()
        paths = set(self.store.current_file_hashes())
        if checkpoint is not None:
            paths.update(checkpoint.files)
        if scan_workspace:
            paths.update(self.workspace.walk_files(skip_dir=self.ignore.is_ignored_dir))
        return sorted(p for p in paths if not self.ignore.is_ignored(p))

    def detect(self, relpaths: list[str]) -> UnknownChangeReport:
        """Compare live content of paths against the chain and latest checkpoint.

        Paths the engine has never observed are exempt unless a checkpoint
        exists and the file appeared after it. Without a checkpoint, drift is
        still reported but carries no diff.
        """
        checkpoint = self.checkpoints.load()
        changes: list[UnknownChange] = []
        for relpath in relpaths:
            state = read_file_state(self.workspace, relpath)
            expected, prior = self._baseline(relpath, checkpoint)
            if expected is None:
                if self._created_since(state, checkpoint):
                    changes.append(
                        self._change(relpath, EMPTY_HASH, None, state.content, state.hash)
                    )
                continue
            if state.hash == expected:
                continue
            changes.append(
                self._change(relpath, expected, prior, state.content, state.hash)
            )

        if changes:
            logger.warning(
                "Unknown changes detected",
                files=[c.file_path for c in changes],
                checkpoint_id=checkpoint.id if checkpoint else None,
            )
        return UnknownChangeReport(
            has_unknown_changes=bool(changes),
            changes=changes,
            generated_diff=merged_drift_diff(changes),
            checkpoint_id=checkpoint.id if checkpoint else None,
            checked_files=list(relpaths),
        )

    def validate_before(self, relpaths: list[str], strategy: str) -> ValidationResult:
        """Check paths before an operation touches them."""
        report = self.detect(relpaths)
        issues = [
            f"{c.file_path}: {c.change_type} outside tracked operations "
            f"(expected {c.expected_hash}, found {c.actual_hash})"
            for c in report.changes
        ]
        if strategy == "strict":
            return ValidationResult(
                success=not issues,
                strategy=strategy,
                issues=issues,
                unknown_changes=report.changes,
            )
        return ValidationResult(
            success=True,
            strategy=strategy,
            warnings=issues,
            unknown_changes=report.changes,
        )

    def verify_operation(
        self, operation: SnapshotOperation, relpaths: list[str]
    ) -> OperationCheck:
        """Recover each path's pre-operation content and check it against the chain.

        The pre-operation content is the live content with the operation's own
        diff section reverse-applied. When the diff has no usable section for a
        path the live content itself is compared, so an operation that did not
        change the file still proves continuity.
        """
        check = OperationCheck()
        try:
            sections = parse_multi_file_diff(operation.diff) if operation.diff else []
        except DiffParseError as e:
            sections = []
            check.warnings.append(f"Operation diff could not be parsed: {e}")
            logger.warning("Operation diff unparseable", tool=operation.tool, error=str(e))
        checkpoint = self.checkpoints.load()

        for relpath in relpaths:
            state = read_file_state(self.workspace, relpath)
            base_content = state.content
            section = find_section(sections, relpath) if sections else None
            if section is not None:
                try:
                    base_content = apply_file_diff(state.content, reverse_file_diff(section))
                except DiffApplyError as e:
                    check.warnings.append(
                        f"{relpath}: operation diff does not match file content ({e})"
                    )
                    logger.warning("Operation diff does not apply", path=relpath, error=str(e))
            base_hash = content_hash(base_content)
            check.result_file_hashes[relpath] = state.hash
            check.base_file_hashes[relpath] = base_hash
            check.base_contents[relpath] = base_content

            expected, prior = self._baseline(relpath, checkpoint)
            if expected is None or expected == base_hash:
                continue
            check.unknown_changes.append(
                self._change(relpath, expected, prior, base_content, base_hash)
            )
        return check
