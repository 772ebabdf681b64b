"""Tests for unified-diff generation, parsing, reversal and application."""

from __future__ import annotations

import pytest

from editguard.errors import DiffApplyError, DiffParseError
from editguard.services.diff import (
    add_git_headers,
    apply_diff,
    count_diff_changes,
    generate_unified_diff,
    parse_multi_file_diff,
    reverse_diff,
    summarize_diff,
)


def test_generate_returns_empty_for_equal_texts():
    assert generate_unified_diff("same\n", "same\n", "a.txt") == ""


def test_generate_uses_prefixed_labels():
    diff = generate_unified_diff("x\n", "y\n", "src/a.txt")
    assert diff.startswith("--- a/src/a.txt\n+++ b/src/a.txt\n")
    assert "-x\n+y\n" in diff


@pytest.mark.parametrize(
    ("old", "new"),
    [
        ("a\nb\nc\n", "a\nB\nc\nd\n"),
        ("one\ntwo\n", "zero\none\ntwo\n"),
        ("print(1)", "print(2)"),
        ("keep\nlast", "keep\nlast\n"),
    ],
)
def test_reverse_round_trip(old, new):
    diff = generate_unified_diff(old, new, "f.txt")
    assert apply_diff(old, diff) == new
    reversed_result = reverse_diff(diff)
    assert reversed_result.success
    assert apply_diff(new, reversed_result.diff) == old


def test_creation_and_deletion_round_trip():
    diff = generate_unified_diff(None, "hello\n", "new.txt")
    sections = parse_multi_file_diff(diff)
    assert sections[0].is_creation
    assert sections[0].path == "new.txt"
    assert apply_diff(None, diff) == "hello\n"

    undo = reverse_diff(diff)
    assert undo.success
    assert parse_multi_file_diff(undo.diff)[0].is_deletion
    assert apply_diff("hello\n", undo.diff) is None


def test_reverse_fails_gracefully_on_garbage():
    result = reverse_diff("this is not a diff at all")
    assert result.success is False
    assert result.error

    truncated = "--- a/x\n+++ b/x\n@@ -1,3 +1,3 @@\n-a\n"
    result = reverse_diff(truncated)
    assert result.success is False


def test_parse_multi_file_sections_in_order():
    diff = generate_unified_diff("1\n", "2\n", "b.txt") + generate_unified_diff(
        None, "new\n", "a.txt"
    )
    sections = parse_multi_file_diff(diff)
    assert [s.path for s in sections] == ["b.txt", "a.txt"]
    assert not sections[0].is_creation
    assert sections[1].is_creation


def test_parse_skips_preamble_and_reads_git_headers():
    diff = (
        "commit message line\n"
        "diff --git a/x.py b/x.py\n"
        "index 111..222 100644\n"
        "--- a/x.py\n"
        "+++ b/x.py\n"
        "@@ -1 +1 @@\n"
        "-a\n"
        "+b\n"
    )
    sections = parse_multi_file_diff(diff)
    assert len(sections) == 1
    assert sections[0].extended_headers[0] == "diff --git a/x.py b/x.py"


def test_parse_rejects_hunk_without_header():
    with pytest.raises(DiffParseError):
        parse_multi_file_diff("@@ -1 +1 @@\n-a\n+b\n")


def test_apply_finds_offset_context():
    old = "alpha\nbeta\ngamma\n"
    diff = generate_unified_diff(old, "alpha\nBETA\ngamma\n", "f.txt")
    shifted = "intro 1\nintro 2\n" + old
    assert apply_diff(shifted, diff) == "intro 1\nintro 2\nalpha\nBETA\ngamma\n"


def test_apply_raises_on_mismatched_context():
    diff = generate_unified_diff("a\nb\nc\n", "a\nX\nc\n", "f.txt")
    with pytest.raises(DiffApplyError):
        apply_diff("completely\ndifferent\n", diff)


def test_reverse_keeps_no_newline_marker():
    diff = generate_unified_diff("x\ny", "x\nz", "f.txt")
    assert "\\ No newline at end of file" in diff
    undo = reverse_diff(diff)
    assert "\\ No newline at end of file" in undo.diff
    assert apply_diff("x\nz", undo.diff) == "x\ny"


def test_count_and_summarize():
    diff = generate_unified_diff("a\nb\n", "a\nc\nd\n", "f.txt")
    assert count_diff_changes(diff) == (2, 1)
    assert summarize_diff(diff) == "1 file changed, +2 -1"


def test_add_git_headers_marks_new_files():
    diff = generate_unified_diff(None, "x\n", "n.txt") + generate_unified_diff(
        "a\n", "b\n", "m.txt"
    )
    with_headers = add_git_headers(diff)
    assert "diff --git a/n.txt b/n.txt\nnew file mode 100644\n" in with_headers
    assert "diff --git a/m.txt b/m.txt\n--- a/m.txt" in with_headers
    assert add_git_headers("not a diff") == "not a diff"
