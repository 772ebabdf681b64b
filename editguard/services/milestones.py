"""Milestones: gap-free runs of snapshots consolidated into one unit.

A milestone always starts right after the previous milestone's last snapshot
(or at sequence 1), so consecutive milestones tile the chain without holes.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from editguard.config.constants import INDEX_FILE_NAME
from editguard.core.workspace import Workspace, new_id, now_iso, write_json_atomic
from editguard.errors import ChainIntegrityError, MilestoneContinuityError, SnapshotError
from editguard.schemas import (
    Milestone,
    MilestoneIndexEntry,
    MilestoneResult,
    MilestoneSummary,
    Snapshot,
    SnapshotIndexEntry,
)
from editguard.services.diff import count_diff_changes, merge_diffs
from editguard.services.snapshots import SnapshotStore, verify_chain
from editguard.utils.logger import get_logger

logger = get_logger("milestones")


class MilestoneStore:
    def __init__(self, workspace: Workspace, snapshots: SnapshotStore):
        self.workspace = workspace
        self.snapshots = snapshots
        self.entries: list[MilestoneIndexEntry] = []

    @property
    def directory(self) -> Path:
        return self.workspace.milestones_dir

    @property
    def index_path(self) -> Path:
        return self.directory / INDEX_FILE_NAME

    def initialize(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.entries = []
        if not self.index_path.exists():
            return
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            self.entries = sorted(
                (MilestoneIndexEntry.model_validate(e) for e in data["milestones"]),
                key=lambda e: e.end_sequence_number,
            )
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
            logger.warning(
                "Milestone index unreadable, starting empty",
                path=str(self.index_path),
                error=str(e),
            )

    def latest(self) -> MilestoneIndexEntry | None:
        return self.entries[-1] if self.entries else None

    def next_start(self) -> int:
        latest = self.latest()
        return latest.end_sequence_number + 1 if latest else 1

    def create_by_range(
        self,
        title: str,
        description: str = "",
        end_snapshot_id: str | None = None,
        tags: list[str] | None = None,
    ) -> MilestoneResult:
        """Consolidate everything after the previous milestone up to the end snapshot.

        Raises:
            SnapshotError: If the end snapshot is unknown or nothing is recorded.
            MilestoneContinuityError: If the range has gaps or broken links.
        """
        start = self.next_start()
        if end_snapshot_id is not None:
            end_entry = self.snapshots.entry(end_snapshot_id)
            if end_entry is None:
                raise SnapshotError(f"Snapshot not found: {end_snapshot_id}")
        else:
            end_entry = self.snapshots.latest()
            if end_entry is None:
                raise SnapshotError("No snapshots recorded yet")
        end = end_entry.sequence_number
        if end < start:
            raise MilestoneContinuityError(
                f"Snapshot {end} is already covered by milestones (next start is {start})"
            )
        try:
            entries = self.snapshots.entries_in_sequence_range(start, end)
        except ChainIntegrityError as e:
            logger.error("Milestone range broken", start=start, end=end, issues=e.issues)
            raise MilestoneContinuityError(
                f"Cannot create milestone for snapshots {start}-{end}: {e}", e.issues
            ) from e
        return self._persist(entries, title, description, tags or [])

    def create(
        self,
        snapshot_ids: list[str],
        title: str,
        description: str = "",
        tags: list[str] | None = None,
    ) -> MilestoneResult:
        """Consolidate an explicit id list, which must continue the milestone chain.

        Raises:
            SnapshotError: If an id is unknown or the list is empty.
            MilestoneContinuityError: If the ids do not form the next gap-free run.
        """
        if not snapshot_ids:
            raise SnapshotError("No snapshot ids given")
        entries = []
        for snapshot_id in snapshot_ids:
            entry = self.snapshots.entry(snapshot_id)
            if entry is None:
                raise SnapshotError(f"Snapshot not found: {snapshot_id}")
            entries.append(entry)
        entries.sort(key=lambda e: e.sequence_number)

        issues = []
        start = self.next_start()
        if entries[0].sequence_number != start:
            issues.append(
                f"Milestone must start at sequence {start}, "
                f"got {entries[0].sequence_number}"
            )
        issues.extend(verify_chain(entries))
        if issues:
            logger.error("Milestone ids not continuous", issues=issues)
            raise MilestoneContinuityError("; ".join(issues), issues)
        return self._persist(entries, title, description, tags or [])

    def _persist(
        self,
        entries: list[SnapshotIndexEntry],
        title: str,
        description: str,
        tags: list[str],
    ) -> MilestoneResult:
        previous = self.latest()
        expected_parent = previous.last_snapshot_id if previous else None
        if entries[0].previous_snapshot_id != expected_parent:
            issue = (
                f"Snapshot {entries[0].sequence_number} links to "
                f"{entries[0].previous_snapshot_id}, but the previous milestone "
                f"ends at {expected_parent}"
            )
            raise MilestoneContinuityError(issue, [issue])

        records: list[Snapshot] = []
        for entry in entries:
            snapshot = self.snapshots.get(entry.id)
            if snapshot is None:
                issue = f"Snapshot record {entry.sequence_number} ({entry.id}) is missing"
                raise MilestoneContinuityError(issue, [issue])
            records.append(snapshot)

        merge = merge_diffs([s.diff for s in records])
        added = removed = 0
        affected: list[str] = []
        for snapshot in records:
            a, r = count_diff_changes(snapshot.diff)
            added += a
            removed += r
            affected.extend(f for f in snapshot.tracked_files if f not in affected)

        milestone = Milestone(
            id=new_id(),
            timestamp=now_iso(),
            title=title,
            description=description,
            start_sequence_number=entries[0].sequence_number,
            end_sequence_number=entries[-1].sequence_number,
            snapshot_ids=[e.id for e in entries],
            previous_milestone_id=previous.id if previous else None,
            combined_diff=merge.merged_diff,
            summary=MilestoneSummary(
                total_operations=len(records),
                affected_files=affected,
                lines_added=added,
                lines_removed=removed,
            ),
            tags=tags,
            merge_outcome=merge.outcome.value,
            merge_conflicts=[f"{c.file_path}: {c.message}" for c in merge.conflicts],
        )
        write_json_atomic(self.directory / f"{milestone.id}.json", milestone.model_dump(mode="json"))
        self.entries.append(
            MilestoneIndexEntry(
                id=milestone.id,
                timestamp=milestone.timestamp,
                title=title,
                start_sequence_number=milestone.start_sequence_number,
                end_sequence_number=milestone.end_sequence_number,
                last_snapshot_id=entries[-1].id,
                tags=tags,
            )
        )
        write_json_atomic(
            self.index_path,
            {"milestones": [e.model_dump(mode="json") for e in self.entries]},
        )
        logger.info(
            "Milestone created",
            milestone_id=milestone.id,
            start=milestone.start_sequence_number,
            end=milestone.end_sequence_number,
            merge_outcome=milestone.merge_outcome,
        )
        return MilestoneResult(
            milestone_id=milestone.id, milestone=milestone, warnings=merge.warnings
        )

    def get(self, milestone_id: str) -> Milestone | None:
        path = self.directory / f"{milestone_id}.json"
        try:
            return Milestone.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Milestone record unreadable", milestone_id=milestone_id, error=str(e))
            return None

    def list(
        self, include_diffs: bool = False, tags: list[str] | None = None
    ) -> list[Milestone]:
        """Milestones newest first, optionally restricted to any of the tags."""
        result = []
        for entry in reversed(self.entries):
            if tags and not set(tags) & set(entry.tags):
                continue
            milestone = self.get(entry.id)
            if milestone is None:
                continue
            if not include_diffs:
                milestone = milestone.model_copy(update={"combined_diff": ""})
            result.append(milestone)
        return result
