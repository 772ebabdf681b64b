"""Unified-diff generation, parsing, reversal, application and merging.

Diff text is handled as a list of per-file sections. A section keeps its
``---``/``+++`` labels verbatim (``a/x.py``, ``b/x.py`` or ``/dev/null``) and the
canonical path strips the conventional ``a/``/``b/`` prefixes, which is what
sections are grouped by when several diffs are merged.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from enum import Enum

from editguard.errors import DiffApplyError, DiffParseError
from editguard.utils.logger import get_logger

logger = get_logger("diff")

DEV_NULL = "/dev/null"
NO_NEWLINE_MARKER = "\\ No newline at end of file"

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
_GIT_HEADER_RE = re.compile(r"^diff --git (\S+) (\S+)$")


def canonical_path(label: str) -> str | None:
    """Strip ``a/``/``b/`` prefixes from a header label; /dev/null has no path."""
    label = label.strip()
    if label == DEV_NULL:
        return None
    if label.startswith(("a/", "b/")):
        return label[2:]
    return label


def _split_lines(text: str) -> list[str]:
    # str.splitlines also breaks on form feeds and unicode separators
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _strip_label(raw: str) -> str:
    # Drop the tab-separated timestamp some tools append to labels
    return raw.split("\t", 1)[0].rstrip()


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # Body lines with their prefix and without a line terminator
    lines: list[str] = field(default_factory=list)
    section: str = ""

    def header(self) -> str:
        return (
            f"@@ -{_format_range(self.old_start, self.old_count)} "
            f"+{_format_range(self.new_start, self.new_count)} @@{self.section}"
        )

    def old_span(self) -> tuple[int, int]:
        """Half-open 0-based line interval this hunk covers in the old file."""
        lo = self.old_start - 1 if self.old_count else self.old_start
        return lo, lo + self.old_count

    def new_span(self) -> tuple[int, int]:
        lo = self.new_start - 1 if self.new_count else self.new_start
        return lo, lo + self.new_count

    def units(self) -> list[tuple[str, bool]]:
        """Body lines paired with whether a no-newline marker follows them."""
        result: list[tuple[str, bool]] = []
        for line in self.lines:
            if line.startswith("\\"):
                if result:
                    result[-1] = (result[-1][0], True)
                continue
            result.append((line, False))
        return result

    def old_text_lines(self) -> list[str]:
        return [
            line[1:] + ("" if no_eol else "\n")
            for line, no_eol in self.units()
            if line[0] in " -"
        ]

    def new_text_lines(self) -> list[str]:
        return [
            line[1:] + ("" if no_eol else "\n")
            for line, no_eol in self.units()
            if line[0] in " +"
        ]

    def counts(self) -> tuple[int, int]:
        added = sum(1 for line in self.lines if line.startswith("+"))
        removed = sum(1 for line in self.lines if line.startswith("-"))
        return added, removed


def _format_range(start: int, count: int) -> str:
    return str(start) if count == 1 else f"{start},{count}"


@dataclass
class FileDiff:
    old_path: str
    new_path: str
    hunks: list[Hunk] = field(default_factory=list)
    # git extended header lines (diff --git, index, mode changes) in input order
    extended_headers: list[str] = field(default_factory=list)

    @property
    def is_creation(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def is_deletion(self) -> bool:
        return self.new_path == DEV_NULL

    @property
    def path(self) -> str:
        return canonical_path(self.new_path) or canonical_path(self.old_path) or ""

    def render(self) -> str:
        lines = list(self.extended_headers)
        lines.append(f"--- {self.old_path}")
        lines.append(f"+++ {self.new_path}")
        for hunk in self.hunks:
            lines.append(hunk.header())
            lines.extend(hunk.lines)
        return "\n".join(lines) + "\n"


def generate_unified_diff(
    old_text: str | None,
    new_text: str | None,
    old_path: str,
    new_path: str | None = None,
    *,
    context: int = 3,
) -> str:
    """Return a unified diff from old_text to new_text, or "" when equal.

    None on either side marks an absent file and uses /dev/null as its label.
    """
    new_path = new_path or old_path
    if old_text == new_text:
        return ""
    from_label = DEV_NULL if old_text is None else f"a/{old_path}"
    to_label = DEV_NULL if new_text is None else f"b/{new_path}"
    if (old_text or "") == (new_text or ""):
        # Empty file created or removed; no hunk to show
        return f"--- {from_label}\n+++ {to_label}\n"
    out: list[str] = []
    for line in difflib.unified_diff(
        _split_lines(old_text or ""),
        _split_lines(new_text or ""),
        fromfile=from_label,
        tofile=to_label,
        n=context,
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(NO_NEWLINE_MARKER + "\n")
    return "".join(out)


def _parse_hunk(lines: list[str], start: int) -> tuple[Hunk, int]:
    header = lines[start]
    match = _HUNK_HEADER_RE.match(header)
    if not match:
        raise DiffParseError(f"Invalid hunk header: {header!r}")
    old_count = int(match.group(2)) if match.group(2) is not None else 1
    new_count = int(match.group(4)) if match.group(4) is not None else 1
    hunk = Hunk(
        old_start=int(match.group(1)),
        old_count=old_count,
        new_start=int(match.group(3)),
        new_count=new_count,
        section=match.group(5),
    )
    old_left, new_left = old_count, new_count
    i = start + 1
    while old_left > 0 or new_left > 0:
        if i >= len(lines):
            raise DiffParseError(f"Truncated hunk {header!r}")
        line = lines[i]
        if line.startswith("\\"):
            hunk.lines.append(line)
        elif line.startswith("-"):
            old_left -= 1
            hunk.lines.append(line)
        elif line.startswith("+"):
            new_left -= 1
            hunk.lines.append(line)
        elif line.startswith(" ") or line == "":
            # Some editors strip the single space of empty context lines
            old_left -= 1
            new_left -= 1
            hunk.lines.append(line or " ")
        else:
            raise DiffParseError(f"Unexpected line in hunk {header!r}: {line!r}")
        if old_left < 0 or new_left < 0:
            raise DiffParseError(f"Hunk body longer than header {header!r}")
        i += 1
    while i < len(lines) and lines[i].startswith("\\"):
        hunk.lines.append(lines[i])
        i += 1
    return hunk, i


def _section_from_git_header(headers: list[str]) -> FileDiff | None:
    match = _GIT_HEADER_RE.match(headers[0])
    if not match:
        return None
    old_path, new_path = match.group(1), match.group(2)
    if any(h.startswith("new file mode") for h in headers):
        old_path = DEV_NULL
    if any(h.startswith("deleted file mode") for h in headers):
        new_path = DEV_NULL
    return FileDiff(old_path=old_path, new_path=new_path, extended_headers=headers)


def parse_multi_file_diff(diff_text: str) -> list[FileDiff]:
    """Split diff text into ordered per-file sections.

    Text before the first header (commit messages, ``Index:`` lines) is
    skipped. Text with no recognizable section yields an empty list.

    Raises:
        DiffParseError: On a malformed or truncated hunk.
    """
    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    sections: list[FileDiff] = []
    current: FileDiff | None = None
    pending: list[str] = []

    def flush_pending() -> None:
        # A git header with no ---/+++ pair (empty or binary file change)
        if pending and pending[0].startswith("diff --git "):
            section = _section_from_git_header(list(pending))
            if section is not None:
                sections.append(section)
        pending.clear()

    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("diff --git "):
            flush_pending()
            current = None
            pending.append(line)
            i += 1
        elif (
            line.startswith("--- ")
            and i + 1 < len(lines)
            and lines[i + 1].startswith("+++ ")
        ):
            current = FileDiff(
                old_path=_strip_label(line[4:]),
                new_path=_strip_label(lines[i + 1][4:]),
                extended_headers=list(pending),
            )
            pending.clear()
            sections.append(current)
            i += 2
        elif line.startswith("@@"):
            if current is None:
                raise DiffParseError(f"Hunk without file header at line {i + 1}")
            hunk, i = _parse_hunk(lines, i)
            current.hunks.append(hunk)
        else:
            if pending:
                pending.append(line)
            i += 1
    flush_pending()
    return sections


def _reverse_extended_header(line: str) -> str:
    if line.startswith("new file mode"):
        return "deleted" + line[len("new") :]
    if line.startswith("deleted file mode"):
        return "new" + line[len("deleted") :]
    if line.startswith("index ") and ".." in line:
        head, _, mode = line[len("index ") :].partition(" ")
        before, _, after = head.partition("..")
        return f"index {after}..{before}" + (f" {mode}" if mode else "")
    for a, b in (("rename from ", "rename to "), ("copy from ", "copy to ")):
        if line.startswith(a):
            return b + line[len(a) :]
        if line.startswith(b):
            return a + line[len(b) :]
    if line.startswith("old mode "):
        return "new mode " + line[len("old mode ") :]
    if line.startswith("new mode "):
        return "old mode " + line[len("new mode ") :]
    match = _GIT_HEADER_RE.match(line)
    if match:
        old, new = canonical_path(match.group(1)), canonical_path(match.group(2))
        return f"diff --git a/{new} b/{old}"
    return line


def _reverse_label(label: str, prefix: str) -> str:
    if label == DEV_NULL:
        return label
    if label.startswith(("a/", "b/")):
        return prefix + label[2:]
    return label


def _render_units(units: list[tuple[str, bool]]) -> list[str]:
    lines: list[str] = []
    for line, no_eol in units:
        lines.append(line)
        if no_eol:
            lines.append(NO_NEWLINE_MARKER)
    return lines


def reverse_hunk(hunk: Hunk) -> Hunk:
    """Swap the hunk's sides; within each change block removals come first."""
    body: list[tuple[str, bool]] = []
    removed: list[tuple[str, bool]] = []
    added: list[tuple[str, bool]] = []

    def flush() -> None:
        body.extend(("-" + line[1:], no_eol) for line, no_eol in added)
        body.extend(("+" + line[1:], no_eol) for line, no_eol in removed)
        removed.clear()
        added.clear()

    for unit in hunk.units():
        prefix = unit[0][0]
        if prefix == "-":
            removed.append(unit)
        elif prefix == "+":
            added.append(unit)
        else:
            flush()
            body.append(unit)
    flush()
    return Hunk(
        old_start=hunk.new_start,
        old_count=hunk.new_count,
        new_start=hunk.old_start,
        new_count=hunk.old_count,
        lines=_render_units(body),
        section=hunk.section,
    )


def reverse_file_diff(section: FileDiff) -> FileDiff:
    return FileDiff(
        old_path=_reverse_label(section.new_path, "a/"),
        new_path=_reverse_label(section.old_path, "b/"),
        hunks=[reverse_hunk(h) for h in section.hunks],
        extended_headers=[_reverse_extended_header(h) for h in section.extended_headers],
    )


@dataclass
class ReverseDiffResult:
    success: bool
    diff: str = ""
    error: str | None = None


def reverse_diff(diff_text: str) -> ReverseDiffResult:
    """Invert a multi-file diff. Never raises; failures set success=False."""
    try:
        sections = parse_multi_file_diff(diff_text)
    except DiffParseError as e:
        logger.warning("Cannot reverse unparseable diff", error=str(e))
        return ReverseDiffResult(success=False, error=str(e))
    if not sections:
        return ReverseDiffResult(success=False, error="No file sections in diff")
    reversed_text = "".join(reverse_file_diff(s).render() for s in sections)
    return ReverseDiffResult(success=True, diff=reversed_text)


def _matches_at(lines: list[str], pos: int, expected: list[str]) -> bool:
    if pos < 0 or pos + len(expected) > len(lines):
        return False
    return lines[pos : pos + len(expected)] == expected


def _find_position(
    lines: list[str], expected: list[str], hint: int, floor: int
) -> int | None:
    """Nearest position at or after floor where expected matches, hint first."""
    hint = max(floor, min(hint, len(lines)))
    if _matches_at(lines, hint, expected):
        return hint
    for delta in range(1, len(lines) + 1):
        for pos in (hint - delta, hint + delta):
            if pos >= floor and _matches_at(lines, pos, expected):
                return pos
        if hint - delta < floor and hint + delta > len(lines):
            break
    return None


def apply_file_diff(text: str | None, section: FileDiff) -> str | None:
    """Apply one file section to text; returns None when the file is deleted.

    Raises:
        DiffApplyError: When a hunk's context cannot be found.
    """
    if section.is_creation and text:
        raise DiffApplyError(f"Cannot create {section.path}: file already has content")
    lines = _split_lines(text or "")
    shift = 0
    floor = 0
    for number, hunk in enumerate(section.hunks, start=1):
        old = hunk.old_text_lines()
        new = hunk.new_text_lines()
        base = hunk.old_span()[0]
        pos = _find_position(lines, old, base + shift, floor)
        if pos is None:
            raise DiffApplyError(
                f"Hunk {number} ({hunk.header()}) does not apply to {section.path}"
            )
        lines[pos : pos + len(old)] = new
        shift = pos - base + len(new) - len(old)
        floor = pos + len(new)
    if section.is_deletion:
        return None
    return "".join(lines)


def apply_diff(text: str | None, diff_text: str, path: str | None = None) -> str | None:
    """Apply the section of diff_text for path (or its only section) to text.

    Raises:
        DiffParseError: If the diff cannot be parsed or has no matching section.
        DiffApplyError: If a hunk does not apply.
    """
    section = find_section(parse_multi_file_diff(diff_text), path)
    if section is None:
        raise DiffParseError(f"No diff section for {path or 'file'}")
    return apply_file_diff(text, section)


def find_section(sections: list[FileDiff], path: str | None) -> FileDiff | None:
    if path is None:
        return sections[0] if len(sections) == 1 else None
    for section in sections:
        if path in (canonical_path(section.old_path), canonical_path(section.new_path)):
            return section
    return None


def count_diff_changes(diff_text: str) -> tuple[int, int]:
    """Return (lines added, lines removed) across every section."""
    try:
        sections = parse_multi_file_diff(diff_text)
    except DiffParseError:
        sections = []
    if sections:
        added = removed = 0
        for section in sections:
            for hunk in section.hunks:
                a, r = hunk.counts()
                added += a
                removed += r
        return added, removed
    # Opaque text: count by prefix
    added = removed = 0
    for line in diff_text.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return added, removed


def summarize_diff(diff_text: str) -> str:
    try:
        files = len(parse_multi_file_diff(diff_text))
    except DiffParseError:
        files = 0
    added, removed = count_diff_changes(diff_text)
    noun = "file" if files == 1 else "files"
    return f"{files} {noun} changed, +{added} -{removed}"


def add_git_headers(diff_text: str) -> str:
    """Prefix every section lacking one with a ``diff --git`` header."""
    try:
        sections = parse_multi_file_diff(diff_text)
    except DiffParseError:
        return diff_text
    if not sections:
        return diff_text
    for section in sections:
        if section.extended_headers:
            continue
        old = canonical_path(section.old_path) or section.path
        new = canonical_path(section.new_path) or section.path
        headers = [f"diff --git a/{old} b/{new}"]
        if section.is_creation:
            headers.append("new file mode 100644")
        elif section.is_deletion:
            headers.append("deleted file mode 100644")
        section.extended_headers = headers
    return "".join(s.render() for s in sections)


class MergeOutcome(str, Enum):
    CLEAN = "clean"
    CONFLICTS = "conflicts"
    OPAQUE = "opaque"


@dataclass
class MergeConflict:
    file_path: str
    type: str
    message: str
    # Positions of the two input diffs involved
    diff_indexes: tuple[int, int]


@dataclass
class MergeResult:
    outcome: MergeOutcome
    success: bool
    merged_diff: str
    files_processed: int = 0
    conflicts: list[MergeConflict] = field(default_factory=list)
    opaque_blocks: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _overlaps(a: tuple[int, int], b: tuple[int, int]) -> bool:
    if a[0] == a[1] or b[0] == b[1]:
        # Insertion points collide when equal or strictly inside the other span
        if a[0] == a[1] and b[0] == b[1]:
            return a[0] == b[0]
        point, span = (a[0], b) if a[0] == a[1] else (b[0], a)
        return span[0] < point < span[1]
    return a[0] < b[1] and b[0] < a[1]


@dataclass
class _PlacedHunk:
    hunk: Hunk
    # 0-based start in the first section's old file
    base_lo: int
    source: int


def _renumber(placed: list[_PlacedHunk]) -> list[Hunk]:
    """Order hunks by base position and recompute their new-side starts."""
    delta = 0
    result = []
    for item in sorted(placed, key=lambda p: p.base_lo):
        h = item.hunk
        new_lo = item.base_lo + delta
        result.append(
            Hunk(
                old_start=item.base_lo + 1 if h.old_count else item.base_lo,
                old_count=h.old_count,
                new_start=new_lo + 1 if h.new_count else new_lo,
                new_count=h.new_count,
                lines=list(h.lines),
                section=h.section,
            )
        )
        delta += h.new_count - h.old_count
    return result


def _compose_created(
    path: str, group: list[tuple[int, FileDiff]]
) -> FileDiff | None:
    """Replay sections onto a file the first section creates."""
    content: str | None = None
    for _, section in group:
        content = apply_file_diff(content, section)
    if content is None:
        # Created and deleted inside the range
        return None
    text = generate_unified_diff(None, content, path)
    return parse_multi_file_diff(text)[0]


def _hunk_from_lines(old: list[str], new: list[str]) -> Hunk:
    """Build a hunk body for old -> new; starts are filled in by _renumber."""
    body: list[str] = []

    def emit(prefix: str, line: str) -> None:
        if line.endswith("\n"):
            body.append(prefix + line[:-1])
        else:
            body.append(prefix + line)
            body.append(NO_NEWLINE_MARKER)

    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for line in old[i1:i2]:
                emit(" ", line)
            continue
        for line in old[i1:i2]:
            emit("-", line)
        for line in new[j1:j2]:
            emit("+", line)
    return Hunk(old_start=0, old_count=len(old), new_start=0, new_count=len(new), lines=body)


def _splice(
    lo: int, region: list[str], replacements: list[tuple[tuple[int, int], list[str]]]
) -> list[str]:
    """Region lines with each (span, lines) replacement swapped in."""
    out: list[str] = []
    pos = lo
    for (start, end), lines in sorted(replacements, key=lambda r: r[0]):
        out.extend(region[pos - lo : start - lo])
        out.extend(lines)
        pos = end
    out.extend(region[pos - lo :])
    return out


def _overlap_clusters(
    current: list[Hunk], incoming: list[Hunk]
) -> list[tuple[list[int], list[int]]]:
    """Group earlier and incoming hunks that overlap, transitively.

    Only clusters holding hunks from both sides are returned, as
    (earlier indexes, incoming indexes).
    """
    parent = list(range(len(current) + len(incoming)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for ci, earlier in enumerate(current):
        for ii, hunk in enumerate(incoming):
            if _overlaps(earlier.new_span(), hunk.old_span()):
                parent[find(ci)] = find(len(current) + ii)

    clusters: dict[int, tuple[list[int], list[int]]] = {}
    for ci in range(len(current)):
        clusters.setdefault(find(ci), ([], []))[0].append(ci)
    for ii in range(len(incoming)):
        clusters.setdefault(find(len(current) + ii), ([], []))[1].append(ii)
    return [c for c in clusters.values() if c[0] and c[1]]


def _compose_cluster(earlier: list[Hunk], later: list[Hunk]) -> tuple[int, Hunk] | None:
    """Fold later hunks into the earlier hunks they overlap.

    Both sides are expressed in the coordinates of the file between the two
    diffs. Returns (region start, composed hunk), or None when the overlapping
    lines disagree.
    """
    spans = [h.new_span() for h in earlier] + [h.old_span() for h in later]
    lo = min(s[0] for s in spans)
    hi = max(s[1] for s in spans)
    region: list[str | None] = [None] * (hi - lo)
    for hunk in later:
        start = hunk.old_span()[0]
        for offset, line in enumerate(hunk.old_text_lines()):
            region[start - lo + offset] = line
    for hunk in earlier:
        start = hunk.new_span()[0]
        for offset, line in enumerate(hunk.new_text_lines()):
            index = start - lo + offset
            if region[index] is not None and region[index] != line:
                return None
            region[index] = line
    if any(line is None for line in region):
        return None

    old = _splice(lo, region, [(h.new_span(), h.old_text_lines()) for h in earlier])
    new = _splice(lo, region, [(h.old_span(), h.new_text_lines()) for h in later])
    return lo, _hunk_from_lines(old, new)


def _compose_hunks(
    path: str, group: list[tuple[int, FileDiff]]
) -> tuple[list[Hunk], list[MergeConflict]]:
    placed: list[_PlacedHunk] = []
    unplaced: list[Hunk] = []
    conflicts: list[MergeConflict] = []
    for source, section in group:
        ordered = sorted(placed, key=lambda p: p.base_lo)
        current = _renumber(placed)

        def base_of(position: int, skip: set[int] | None = None) -> int:
            # Translate back through every earlier hunk that ends before position
            return position - sum(
                h.new_count - h.old_count
                for i, h in enumerate(current)
                if (skip is None or i not in skip) and h.new_span()[1] <= position
            )

        absorbed: set[int] = set()
        handled: set[int] = set()
        composed: list[_PlacedHunk] = []
        for earlier_ids, later_ids in _overlap_clusters(current, section.hunks):
            handled.update(later_ids)
            earlier = [current[i] for i in earlier_ids]
            later = [section.hunks[i] for i in later_ids]
            result = _compose_cluster(earlier, later)
            if result is None:
                first = ordered[earlier_ids[0]]
                for hunk in later:
                    conflicts.append(
                        MergeConflict(
                            file_path=path,
                            type="overlapping_hunks",
                            message=(
                                f"{hunk.header()} overlaps {first.hunk.header()} "
                                f"from an earlier diff with different content"
                            ),
                            diff_indexes=(first.source, source),
                        )
                    )
                    unplaced.append(hunk)
                continue
            lo, hunk = result
            absorbed.update(earlier_ids)
            if hunk.old_count == hunk.new_count and all(
                line.startswith((" ", "\\")) for line in hunk.lines
            ):
                # The later diff undid the earlier one
                continue
            composed.append(
                _PlacedHunk(
                    hunk=hunk,
                    base_lo=base_of(lo, set(earlier_ids)),
                    source=min(ordered[i].source for i in earlier_ids),
                )
            )

        incoming = [
            _PlacedHunk(hunk=hunk, base_lo=base_of(hunk.old_span()[0]), source=source)
            for index, hunk in enumerate(section.hunks)
            if index not in handled
        ]
        placed = [p for i, p in enumerate(ordered) if i not in absorbed]
        placed.extend(composed)
        placed.extend(incoming)
    # Conflicting hunks keep their own coordinates after the placed ones
    return _renumber(placed) + unplaced, conflicts


def _merge_group(
    path: str, group: list[tuple[int, FileDiff]]
) -> tuple[FileDiff | None, list[MergeConflict]]:
    first, last = group[0][1], group[-1][1]
    if first.is_creation:
        try:
            return _compose_created(path, group), []
        except (DiffApplyError, DiffParseError) as e:
            logger.warning("Cannot replay created file, merging hunks", path=path, error=str(e))
    hunks, conflicts = _compose_hunks(path, group)
    headers = []
    if any(s.extended_headers for _, s in group):
        headers.append(f"diff --git a/{path} b/{path}")
    merged = FileDiff(
        old_path=first.old_path,
        new_path=last.new_path,
        hunks=hunks,
        extended_headers=headers,
    )
    return merged, conflicts


def merge_diffs(
    diffs: list[str], conflict_resolution: str = "concatenate"
) -> MergeResult:
    """Combine diffs applied in order into one diff with one section per file.

    Sections touching the same canonical path are composed into a single
    section whose hunks are expressed against the original file. Overlapping
    hunks are recorded as conflicts; with ``conflict_resolution="fail"`` they
    make the merge unsuccessful. Inputs that do not parse are carried through
    unchanged as opaque blocks.
    """
    inputs = [d for d in diffs if d and d.strip()]
    if not inputs:
        return MergeResult(outcome=MergeOutcome.CLEAN, success=True, merged_diff="")

    groups: dict[str, list[tuple[int, FileDiff]]] = {}
    opaque: list[str] = []
    warnings: list[str] = []
    files_processed = 0
    for index, text in enumerate(inputs):
        try:
            sections = parse_multi_file_diff(text)
        except DiffParseError as e:
            sections = []
            warnings.append(f"Diff {index} could not be parsed: {e}")
        if not sections:
            opaque.append(text if text.endswith("\n") else text + "\n")
            logger.warning("Treating diff as opaque block", index=index)
            continue
        files_processed += len(sections)
        for section in sections:
            groups.setdefault(section.path, []).append((index, section))

    if len(inputs) == 1 and not opaque:
        return MergeResult(
            outcome=MergeOutcome.CLEAN,
            success=True,
            merged_diff=inputs[0],
            files_processed=files_processed,
        )

    rendered: list[str] = []
    conflicts: list[MergeConflict] = []
    for path, group in groups.items():
        if len(group) == 1:
            rendered.append(group[0][1].render())
            continue
        merged, group_conflicts = _merge_group(path, group)
        conflicts.extend(group_conflicts)
        if merged is not None:
            rendered.append(merged.render())

    if conflicts:
        outcome = MergeOutcome.CONFLICTS
    elif opaque:
        outcome = MergeOutcome.OPAQUE
    else:
        outcome = MergeOutcome.CLEAN
    success = not (conflicts and conflict_resolution == "fail")
    for conflict in conflicts:
        warnings.append(f"{conflict.file_path}: {conflict.message}")
    return MergeResult(
        outcome=outcome,
        success=success,
        merged_diff="".join(rendered + opaque) if success else "",
        files_processed=files_processed,
        conflicts=conflicts,
        opaque_blocks=opaque,
        warnings=warnings,
    )
