"""Tests for merging ordered diffs into one diff per file."""

from __future__ import annotations

from editguard.services.diff import (
    MergeOutcome,
    apply_diff,
    generate_unified_diff,
    merge_diffs,
    parse_multi_file_diff,
)


def _lines(count: int) -> list[str]:
    return [f"line {i}\n" for i in range(1, count + 1)]


def test_merge_empty_input():
    result = merge_diffs([])
    assert result.success
    assert result.merged_diff == ""
    assert result.files_processed == 0
    assert result.outcome is MergeOutcome.CLEAN


def test_single_diff_passes_through():
    diff = generate_unified_diff("a\n", "b\n", "f.txt")
    result = merge_diffs([diff])
    assert result.merged_diff == diff
    assert result.files_processed == 1


def test_same_file_non_overlapping_hunks_compose():
    v0 = _lines(20)
    v1 = ["header\n"] + v0
    v2 = list(v1)
    v2[15] = "line 15 changed\n"
    d1 = generate_unified_diff("".join(v0), "".join(v1), "src/app.py")
    d2 = generate_unified_diff("".join(v1), "".join(v2), "src/app.py")

    result = merge_diffs([d1, d2])

    assert result.outcome is MergeOutcome.CLEAN
    assert result.success
    assert result.files_processed == 2
    assert result.merged_diff.count("--- a/src/app.py") == 1
    assert result.merged_diff.count("+++ b/src/app.py") == 1
    sections = parse_multi_file_diff(result.merged_diff)
    assert len(sections) == 1
    assert len(sections[0].hunks) == 2
    assert apply_diff("".join(v0), result.merged_diff) == "".join(v2)


def test_disjoint_files_keep_order():
    d1 = generate_unified_diff("a\n", "b\n", "one.txt")
    d2 = generate_unified_diff(None, "new\n", "two.txt")
    d3 = generate_unified_diff("x\n", "y\n", "three.txt")

    result = merge_diffs([d1, d2, d3])

    assert result.outcome is MergeOutcome.CLEAN
    assert [s.path for s in parse_multi_file_diff(result.merged_diff)] == [
        "one.txt",
        "two.txt",
        "three.txt",
    ]
    assert result.merged_diff == d1 + d2 + d3


def test_created_file_edited_later_replays_into_one_creation():
    d1 = generate_unified_diff(None, "a\nb\n", "new.py")
    d2 = generate_unified_diff("a\nb\n", "a\nB\nc\n", "new.py")

    result = merge_diffs([d1, d2])

    sections = parse_multi_file_diff(result.merged_diff)
    assert len(sections) == 1
    assert sections[0].is_creation
    assert apply_diff(None, result.merged_diff) == "a\nB\nc\n"


def test_nearby_sequential_edits_compose_into_one_hunk():
    v0 = "".join(_lines(30))
    v1 = v0.replace("line 10\n", "line ten\n")
    v2 = v1.replace("line 14\n", "line fourteen\n")
    d1 = generate_unified_diff(v0, v1, "f.txt")
    d2 = generate_unified_diff(v1, v2, "f.txt")

    result = merge_diffs([d1, d2])

    assert result.outcome is MergeOutcome.CLEAN
    assert result.conflicts == []
    sections = parse_multi_file_diff(result.merged_diff)
    assert len(sections) == 1
    assert len(sections[0].hunks) == 1
    assert apply_diff(v0, result.merged_diff) == v2


def test_overlapping_edits_across_several_diffs_stay_applicable():
    v0 = "".join(_lines(40))
    v1 = v0.replace("line 2\n", "line two\n")
    v2 = v1.replace("line 3\n", "line three\nline 3.5\n")
    v3 = v2.replace("line 7\n", "").replace("line 30\n", "line thirty\n")
    diffs = [
        generate_unified_diff(a, b, "f.txt")
        for a, b in ((v0, v1), (v1, v2), (v2, v3))
    ]

    result = merge_diffs(diffs)

    assert result.outcome is MergeOutcome.CLEAN
    assert apply_diff(v0, result.merged_diff) == v3


def test_stale_overlapping_hunk_is_recorded_as_conflict():
    v0 = "".join(_lines(6))
    v1 = v0.replace("line 3\n", "line three\n")
    d1 = generate_unified_diff(v0, v1, "f.txt")
    # Written against v0, so its context no longer matches after d1
    d2 = generate_unified_diff(v0, v0.replace("line 4\n", "line four\n"), "f.txt")

    concatenated = merge_diffs([d1, d2])
    assert concatenated.outcome is MergeOutcome.CONFLICTS
    assert concatenated.success
    assert concatenated.merged_diff
    assert concatenated.conflicts[0].file_path == "f.txt"
    assert concatenated.conflicts[0].diff_indexes == (0, 1)

    failed = merge_diffs([d1, d2], conflict_resolution="fail")
    assert failed.success is False
    assert failed.merged_diff == ""
    assert failed.conflicts


def test_unparseable_diff_becomes_opaque_block():
    good = generate_unified_diff("a\n", "b\n", "f.txt")
    result = merge_diffs(["free-form notes about a change", good])

    assert result.outcome is MergeOutcome.OPAQUE
    assert result.success
    assert result.opaque_blocks == ["free-form notes about a change\n"]
    assert "free-form notes about a change" in result.merged_diff
    assert "--- a/f.txt" in result.merged_diff


def test_malformed_hunk_is_opaque_with_warning():
    broken = "--- a/f.txt\n+++ b/f.txt\n@@ -1,4 +1,4 @@\n-a\n"
    good = generate_unified_diff("a\n", "b\n", "g.txt")
    result = merge_diffs([broken, good])
    assert result.outcome is MergeOutcome.OPAQUE
    assert any("could not be parsed" in w for w in result.warnings)
