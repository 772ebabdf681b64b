"""Persisted records and operation results.

Every model here round-trips through JSON on disk or is returned from a
SnapshotManager operation.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ChangeType = Literal["created", "modified", "deleted"]
ChangeEvidence = Literal["checkpoint", "hash-only", "new-file"]


class OperationContext(BaseModel):
    session_id: str | None = None
    tool_params: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class SnapshotMetadata(BaseModel):
    files_size_bytes: int = 0
    lines_changed: int = 0
    execution_time_ms: float = 0.0

    model_config = ConfigDict(extra="allow")


class SnapshotOperation(BaseModel):
    """A tool's already-applied change, as handed to create_snapshot."""

    tool: str
    description: str = ""
    affected_files: list[str]
    diff: str = ""
    context: OperationContext = Field(default_factory=OperationContext)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Snapshot(BaseModel):
    id: str
    timestamp: str
    sequence_number: int
    previous_snapshot_id: str | None = None
    tool: str
    description: str = ""
    affected_files: list[str] = Field(default_factory=list)
    tracked_files: list[str] = Field(default_factory=list)
    diff: str = ""
    reverse_diff: str | None = None
    base_file_hashes: dict[str, str] = Field(default_factory=dict)
    result_file_hashes: dict[str, str] = Field(default_factory=dict)
    context: OperationContext = Field(default_factory=OperationContext)
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)
    diff_path: str | None = None
    reverse_diff_path: str | None = None


class SnapshotIndexEntry(BaseModel):
    id: str
    timestamp: str
    tool: str
    affected_files: list[str] = Field(default_factory=list)
    sequence_number: int
    previous_snapshot_id: str | None = None
    # Record location relative to the snapshots directory
    record_path: str


class CheckpointMetadata(BaseModel):
    total_files: int = 0
    total_size_bytes: int = 0
    creation_time_ms: float = 0.0


class Checkpoint(BaseModel):
    id: str
    timestamp: str
    snapshot_id: str
    files: dict[str, str] = Field(default_factory=dict)
    metadata: CheckpointMetadata = Field(default_factory=CheckpointMetadata)


class CheckpointRef(BaseModel):
    id: str
    timestamp: str
    snapshot_id: str


class MilestoneSummary(BaseModel):
    total_operations: int = 0
    affected_files: list[str] = Field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0


class Milestone(BaseModel):
    id: str
    timestamp: str
    title: str
    description: str = ""
    start_sequence_number: int
    end_sequence_number: int
    snapshot_ids: list[str]
    previous_milestone_id: str | None = None
    combined_diff: str = ""
    summary: MilestoneSummary = Field(default_factory=MilestoneSummary)
    tags: list[str] = Field(default_factory=list)
    merge_outcome: Literal["clean", "conflicts", "opaque"] = "clean"
    merge_conflicts: list[str] = Field(default_factory=list)


class MilestoneIndexEntry(BaseModel):
    id: str
    timestamp: str
    title: str
    start_sequence_number: int
    end_sequence_number: int
    last_snapshot_id: str
    tags: list[str] = Field(default_factory=list)


class UnknownChange(BaseModel):
    file_path: str
    change_type: ChangeType
    expected_hash: str | None = None
    actual_hash: str | None = None
    # Absent when no prior content is known for the path
    diff: str | None = None
    evidence: ChangeEvidence = "hash-only"


class UnknownChangeReport(BaseModel):
    has_unknown_changes: bool = False
    changes: list[UnknownChange] = Field(default_factory=list)
    generated_diff: str | None = None
    checkpoint_id: str | None = None
    checked_files: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    success: bool
    strategy: str
    issues: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    unknown_changes: list[UnknownChange] = Field(default_factory=list)


class SnapshotResult(BaseModel):
    snapshot_id: str
    sequence_number: int
    warnings: list[str] = Field(default_factory=list)
    unknown_changes: list[UnknownChange] = Field(default_factory=list)
    integration_snapshot_id: str | None = None
    ignored_files: list[str] = Field(default_factory=list)


class SnapshotDiffResult(BaseModel):
    success: bool
    snapshot_id: str
    diff: str | None = None
    reverse_diff: str | None = None
    summary: str = ""
    message: str | None = None


class HistoryQuery(BaseModel):
    since: str | None = None
    until: str | None = None
    tool_filter: str | None = None
    file_filter: str | None = None
    limit: int | None = Field(default=None, ge=1)
    # Id of the last entry of the previous page
    cursor: str | None = None


class EditHistory(BaseModel):
    snapshots: list[SnapshotIndexEntry] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None
    total: int = 0


class ReverseOptions(BaseModel):
    dry_run: bool = False
    # Skip the check that files still hold the snapshot's result content
    force: bool = False


class ReverseResult(BaseModel):
    success: bool
    message: str
    reversed_snapshot_id: str
    snapshot_id: str | None = None
    dry_run: bool = False
    diff: str | None = None
    conflicts: list[str] = Field(default_factory=list)
    changes_applied: int = 0


class MilestoneResult(BaseModel):
    milestone_id: str
    milestone: Milestone
    warnings: list[str] = Field(default_factory=list)
