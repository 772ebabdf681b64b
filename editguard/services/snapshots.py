"""Durable, hash-chained snapshot log and its in-memory index cache.

Layout under ``<state>/snapshots``::

    index.json                                  entries, expected file hashes, head
    <yyyy>/<mm>/<dd>/<HHMMSS>_<id>.json         full Snapshot record
    <yyyy>/<mm>/<dd>/diffs/<HHMMSS>_<id>_diff.md readable companion (optional)

The store alone assigns ``sequence_number`` and ``previous_snapshot_id`` and
owns the expected per-path hashes that continuity checks compare against.
Numbering continues from the index head, so removing old snapshots never
reuses a sequence number.
Records are written before the index, so a crash in between leaves an orphan
record that ``rebuild_cache(scan_records=True)`` can recover, never an index
entry without a record.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from editguard.config.constants import DIFFS_DIR_NAME, INDEX_FILE_NAME
from editguard.core.workspace import Workspace, new_id, now_iso, parse_iso, write_json_atomic
from editguard.errors import ChainIntegrityError, SnapshotError
from editguard.schemas import (
    EditHistory,
    HistoryQuery,
    Snapshot,
    SnapshotIndexEntry,
    SnapshotMetadata,
    SnapshotOperation,
)
from editguard.utils.logger import get_logger

logger = get_logger("snapshots")


def verify_chain(entries: list[SnapshotIndexEntry]) -> list[str]:
    """Describe every sequence gap or broken parent link between neighbours."""
    issues = []
    for prev, entry in zip(entries, entries[1:]):
        if entry.sequence_number == prev.sequence_number:
            issues.append(
                f"Duplicate sequence number {entry.sequence_number} "
                f"({prev.id} and {entry.id})"
            )
        elif entry.sequence_number != prev.sequence_number + 1:
            missing = (
                f"{prev.sequence_number + 1}"
                if entry.sequence_number == prev.sequence_number + 2
                else f"{prev.sequence_number + 1}-{entry.sequence_number - 1}"
            )
            issues.append(
                f"Sequence gap between {prev.sequence_number} and "
                f"{entry.sequence_number} (missing {missing})"
            )
        elif entry.previous_snapshot_id != prev.id:
            issues.append(
                f"Snapshot {entry.sequence_number} links to "
                f"{entry.previous_snapshot_id}, expected {prev.id}"
            )
    return issues


def _render_diff_file(snapshot: Snapshot, diff: str, fmt: str, reverse: bool) -> str:
    if fmt != "md":
        return diff
    title = "Reverse diff" if reverse else "Diff"
    files = ", ".join(snapshot.tracked_files) or "-"
    return (
        f"# {title} for snapshot {snapshot.id}\n\n"
        f"- Sequence: {snapshot.sequence_number}\n"
        f"- Tool: {snapshot.tool}\n"
        f"- Timestamp: {snapshot.timestamp}\n"
        f"- Files: {files}\n\n"
        f"```diff\n{diff}{'' if diff.endswith(chr(10)) else chr(10)}```\n"
    )


class SnapshotStore:
    def __init__(
        self,
        workspace: Workspace,
        *,
        save_diff_files: bool = True,
        diff_file_format: str = "md",
    ):
        self.workspace = workspace
        self.save_diff_files = save_diff_files
        self.diff_file_format = diff_file_format
        self._by_sequence: list[SnapshotIndexEntry] = []
        self._by_timestamp: list[SnapshotIndexEntry] = []
        self._by_id: dict[str, SnapshotIndexEntry] = {}
        self._file_hashes: dict[str, str] = {}
        # Highest sequence ever assigned; survives removal of every entry
        self._head_sequence = 0
        self._head_id: str | None = None
        self.corrupted = False

    @property
    def directory(self) -> Path:
        return self.workspace.snapshots_dir

    @property
    def index_path(self) -> Path:
        return self.directory / INDEX_FILE_NAME

    # ---- cache ----
    def _set_entries(self, entries: Iterable[SnapshotIndexEntry]) -> None:
        self._by_sequence = sorted(entries, key=lambda e: e.sequence_number)
        self._by_timestamp = sorted(
            self._by_sequence, key=lambda e: (e.timestamp, e.sequence_number)
        )
        self._by_id = {e.id: e for e in self._by_sequence}

    def _set_head(self, sequence: int, snapshot_id: str | None) -> None:
        latest = self.latest()
        if latest and latest.sequence_number >= sequence:
            sequence, snapshot_id = latest.sequence_number, latest.id
        self._head_sequence = sequence
        self._head_id = snapshot_id

    def head(self) -> tuple[int, str | None]:
        """Last assigned sequence number and snapshot id, even if since removed."""
        return self._head_sequence, self._head_id

    def rebuild_cache(self, *, scan_records: bool = False) -> None:
        """Re-derive the cache from index.json, or from the records themselves.

        An unparseable index leaves an empty cache and sets ``corrupted``;
        the damaged file is kept aside as ``index.corrupt.json``.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        self.corrupted = False
        if scan_records:
            self._rebuild_from_records()
            return
        if not self.index_path.exists():
            self._set_entries([])
            self._file_hashes = {}
            self._set_head(0, None)
            return
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            entries = [SnapshotIndexEntry.model_validate(e) for e in data["snapshots"]]
            hashes = dict(data.get("file_hashes") or {})
            head = data.get("head") or {}
            head_sequence = int(head.get("last_sequence_number") or 0)
            head_id = head.get("last_snapshot_id")
        except (OSError, ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
            logger.warning(
                "Snapshot index unreadable, starting with empty cache",
                path=str(self.index_path),
                error=str(e),
            )
            self.corrupted = True
            self.index_path.replace(self.index_path.with_name("index.corrupt.json"))
            self._set_entries([])
            self._file_hashes = {}
            self._set_head(0, None)
            return
        self._set_entries(entries)
        self._file_hashes = hashes
        self._set_head(head_sequence, head_id)
        logger.debug("Snapshot cache loaded", snapshots=len(entries), head=self._head_sequence)

    def _rebuild_from_records(self) -> None:
        """Re-derive the index from the records; a broken chain is never saved.

        Raises:
            ChainIntegrityError: If the records carry duplicate sequence
                numbers, gaps or broken parent links.
        """
        snapshots: list[tuple[Snapshot, str]] = []
        for path in sorted(self.directory.glob("*/*/*/*.json")):
            try:
                snapshot = Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable snapshot record", path=str(path), error=str(e))
                continue
            snapshots.append((snapshot, path.relative_to(self.directory).as_posix()))
        snapshots.sort(key=lambda item: item[0].sequence_number)
        entries = [self._entry_for(s, rel) for s, rel in snapshots]
        issues = verify_chain(entries)
        if issues:
            self.corrupted = True
            logger.error(
                "Snapshot records do not form a chain, index left unchanged",
                records=len(entries),
                issues=issues,
            )
            raise ChainIntegrityError("; ".join(issues), issues)
        hashes: dict[str, str] = {}
        for snapshot, _ in snapshots:
            hashes.update(snapshot.result_file_hashes)
        self._set_entries(entries)
        self._file_hashes = hashes
        self._set_head(self._head_sequence, self._head_id)
        self._save_index()
        logger.info("Snapshot index rebuilt from records", snapshots=len(snapshots))

    def _save_index(self) -> None:
        write_json_atomic(
            self.index_path,
            {
                "snapshots": [e.model_dump(mode="json") for e in self._by_sequence],
                "file_hashes": self._file_hashes,
                "head": {
                    "last_sequence_number": self._head_sequence,
                    "last_snapshot_id": self._head_id,
                },
            },
        )

    @staticmethod
    def _entry_for(snapshot: Snapshot, record_path: str) -> SnapshotIndexEntry:
        return SnapshotIndexEntry(
            id=snapshot.id,
            timestamp=snapshot.timestamp,
            tool=snapshot.tool,
            affected_files=snapshot.affected_files,
            sequence_number=snapshot.sequence_number,
            previous_snapshot_id=snapshot.previous_snapshot_id,
            record_path=record_path,
        )

    # ---- writes ----
    def append(
        self,
        operation: SnapshotOperation,
        *,
        tracked_files: list[str],
        base_file_hashes: dict[str, str],
        result_file_hashes: dict[str, str],
        reverse_diff: str | None,
        metadata: SnapshotMetadata,
    ) -> Snapshot:
        """Persist a new snapshot at the head of the chain."""
        head_sequence, head_id = self.head()
        snapshot = Snapshot(
            id=new_id(),
            timestamp=now_iso(),
            sequence_number=head_sequence + 1,
            previous_snapshot_id=head_id,
            tool=operation.tool,
            description=operation.description,
            affected_files=list(operation.affected_files),
            tracked_files=tracked_files,
            diff=operation.diff,
            reverse_diff=reverse_diff,
            base_file_hashes=base_file_hashes,
            result_file_hashes=result_file_hashes,
            context=operation.context,
            metadata=metadata,
        )
        moment = parse_iso(snapshot.timestamp)
        day_dir = moment.strftime("%Y/%m/%d")
        stem = f"{moment.strftime('%H%M%S')}_{snapshot.id}"
        if self.save_diff_files:
            self._write_diff_files(snapshot, day_dir, stem)

        record_path = f"{day_dir}/{stem}.json"
        write_json_atomic(self.directory / record_path, snapshot.model_dump(mode="json"))

        entry = self._entry_for(snapshot, record_path)
        hashes = {**self._file_hashes, **result_file_hashes}
        previous_state = (list(self._by_sequence), self._file_hashes, self.head())
        self._set_entries(self._by_sequence + [entry])
        self._file_hashes = hashes
        self._set_head(snapshot.sequence_number, snapshot.id)
        try:
            self._save_index()
        except OSError:
            self._set_entries(previous_state[0])
            self._file_hashes = previous_state[1]
            self._head_sequence, self._head_id = previous_state[2]
            raise
        logger.info(
            "Snapshot recorded",
            snapshot_id=snapshot.id,
            sequence=snapshot.sequence_number,
            tool=snapshot.tool,
            files=len(tracked_files),
        )
        return snapshot

    def _write_diff_files(self, snapshot: Snapshot, day_dir: str, stem: str) -> None:
        fmt = self.diff_file_format
        diffs_dir = self.directory / day_dir / DIFFS_DIR_NAME
        try:
            diffs_dir.mkdir(parents=True, exist_ok=True)
            if snapshot.diff:
                path = diffs_dir / f"{stem}_diff.{fmt}"
                path.write_text(_render_diff_file(snapshot, snapshot.diff, fmt, False), encoding="utf-8")
                snapshot.diff_path = path.relative_to(self.directory).as_posix()
            if snapshot.reverse_diff:
                path = diffs_dir / f"{stem}_reverse_diff.{fmt}"
                path.write_text(
                    _render_diff_file(snapshot, snapshot.reverse_diff, fmt, True), encoding="utf-8"
                )
                snapshot.reverse_diff_path = path.relative_to(self.directory).as_posix()
        except OSError as e:
            # Records carry the diff inline; the companion file is optional
            logger.warning("Failed to write diff file", snapshot_id=snapshot.id, error=str(e))

    def remove(self, snapshot_ids: Iterable[str]) -> list[str]:
        """Delete records and their index entries; unknown ids are skipped."""
        doomed = [self._by_id[i] for i in snapshot_ids if i in self._by_id]
        if not doomed:
            return []
        doomed_ids = {e.id for e in doomed}
        self._set_entries(e for e in self._by_sequence if e.id not in doomed_ids)
        self._save_index()
        for entry in doomed:
            record = self.directory / entry.record_path
            stem = Path(entry.record_path).stem
            for companion in record.parent.glob(f"{DIFFS_DIR_NAME}/{stem}_*"):
                companion.unlink(missing_ok=True)
            record.unlink(missing_ok=True)
        return [e.id for e in doomed]

    def cleanup(self, older_than: datetime) -> list[str]:
        """Delete snapshots recorded before the cutoff."""
        removed = self.remove(
            e.id for e in self._by_sequence if parse_iso(e.timestamp) < older_than
        )
        if removed:
            logger.info("Removed old snapshots", removed=len(removed))
        return removed

    # ---- reads ----
    def latest(self) -> SnapshotIndexEntry | None:
        return self._by_sequence[-1] if self._by_sequence else None

    def entry(self, snapshot_id: str) -> SnapshotIndexEntry | None:
        return self._by_id.get(snapshot_id)

    def entries(self) -> list[SnapshotIndexEntry]:
        return list(self._by_sequence)

    def get(self, snapshot_id: str) -> Snapshot | None:
        entry = self._by_id.get(snapshot_id)
        if entry is None:
            return None
        path = self.directory / entry.record_path
        try:
            return Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("Snapshot record missing", snapshot_id=snapshot_id, path=str(path))
            return None
        except (OSError, ValueError) as e:
            logger.warning("Snapshot record unreadable", snapshot_id=snapshot_id, error=str(e))
            return None

    def expected_hash(self, relpath: str) -> str | None:
        return self._file_hashes.get(relpath)

    def current_file_hashes(self) -> dict[str, str]:
        return dict(self._file_hashes)

    def entries_in_sequence_range(self, start: int, end: int) -> list[SnapshotIndexEntry]:
        """Entries with start <= sequence <= end, verified gap-free and linked.

        Raises:
            ChainIntegrityError: If the range is empty or the chain is broken.
        """
        entries = [e for e in self._by_sequence if start <= e.sequence_number <= end]
        issues = []
        if not entries:
            raise ChainIntegrityError(f"No snapshots in sequence range {start}-{end}")
        if entries[0].sequence_number != start:
            issues.append(
                f"Sequence gap: range starts at {start} but first snapshot is "
                f"{entries[0].sequence_number}"
            )
        if entries[-1].sequence_number != end:
            issues.append(
                f"Sequence gap: range ends at {end} but last snapshot is "
                f"{entries[-1].sequence_number}"
            )
        issues.extend(verify_chain(entries))
        if issues:
            raise ChainIntegrityError("; ".join(issues), issues)
        return entries

    def query(self, query: HistoryQuery, default_limit: int = 50) -> EditHistory:
        """Filter the cache newest first and cut one page after the cursor."""
        since = parse_iso(query.since) if query.since else None
        until = parse_iso(query.until) if query.until else None
        tool = query.tool_filter.lower() if query.tool_filter else None

        def keep(entry: SnapshotIndexEntry) -> bool:
            moment = parse_iso(entry.timestamp)
            if since and moment < since:
                return False
            if until and moment > until:
                return False
            if tool and entry.tool.lower() != tool:
                return False
            if query.file_filter and not any(
                query.file_filter in f for f in entry.affected_files
            ):
                return False
            return True

        matches = [e for e in reversed(self._by_timestamp) if keep(e)]
        start = 0
        if query.cursor:
            positions = [i for i, e in enumerate(matches) if e.id == query.cursor]
            if not positions:
                raise SnapshotError(f"Unknown history cursor: {query.cursor}")
            start = positions[0] + 1
        limit = query.limit or default_limit
        page = matches[start : start + limit]
        has_more = start + limit < len(matches)
        return EditHistory(
            snapshots=page,
            has_more=has_more,
            next_cursor=page[-1].id if has_more and page else None,
            total=len(matches),
        )

    def stats(self) -> dict[str, Any]:
        latest = self.latest()
        return {
            "total_snapshots": len(self._by_sequence),
            "latest_snapshot_id": latest.id if latest else None,
            "latest_sequence_number": latest.sequence_number if latest else 0,
            "head_sequence_number": self._head_sequence,
            "tracked_paths": len(self._file_hashes),
            "cache_corrupted": self.corrupted,
            "chain_issues": verify_chain(self._by_sequence),
            "index_bytes": self.index_path.stat().st_size if self.index_path.exists() else 0,
        }
