"""Tests for line diff statistics, hunks and reverse patches."""

import pytest

from page_changes.core.diff import (
    NO_NEWLINE_MARKER,
    apply_reverse_patch,
    build_reverse_patch,
    compute_hunks,
    compute_stats,
)


def numbered_lines(count: int) -> str:
    return "".join(f"line {i}\n" for i in range(1, count + 1))


@pytest.mark.parametrize(
    "content", ["", "hello\n", "no trailing newline", "a\n\n\nb\n", "x\r\ny\r\n"]
)
def test_stats_are_zero_for_identical_content(content):
    """No-op edits report no additions or deletions."""
    stats = compute_stats(content, content)
    assert stats.additions == 0
    assert stats.deletions == 0
    assert compute_hunks("page.md", content, content) == []


def test_stats_count_added_line():
    stats = compute_stats("hello\n", "hello\nworld\n")
    assert (stats.additions, stats.deletions) == (1, 0)


def test_stats_count_removed_line():
    stats = compute_stats("a\nb\nc\n", "a\nc\n")
    assert (stats.additions, stats.deletions) == (0, 1)


def test_stats_no_phantom_line_at_end_of_file():
    """A trailing newline does not count as an extra empty line."""
    stats = compute_stats("", "x\ny\n")
    assert (stats.additions, stats.deletions) == (2, 0)

    stats = compute_stats("x\ny\n", "")
    assert (stats.additions, stats.deletions) == (0, 2)


def test_stats_missing_final_newline_is_a_change():
    stats = compute_stats("a", "a\n")
    assert (stats.additions, stats.deletions) == (1, 1)


def test_single_hunk_shape():
    hunks = compute_hunks("notes.md", "hello\n", "hello\nworld\n")

    assert len(hunks) == 1
    hunk = hunks[0]
    assert hunk.id == "notes.md:1:1:0"
    assert (hunk.old_start, hunk.old_lines) == (1, 1)
    assert (hunk.new_start, hunk.new_lines) == (1, 2)
    assert hunk.lines == [" hello", "+world"]
    assert hunk.adds == 1
    assert hunk.removes == 0


def test_distant_changes_produce_separate_hunks():
    before = numbered_lines(20)
    after = before.replace("line 2\n", "line two\n").replace("line 18\n", "line eighteen\n")

    hunks = compute_hunks("doc.md", before, after)

    assert len(hunks) == 2
    assert hunks[0].id.endswith(":0")
    assert hunks[1].id.endswith(":1")
    assert hunks[0].id != hunks[1].id
    assert "-line 2" in hunks[0].lines and "+line two" in hunks[0].lines
    assert "-line 18" in hunks[1].lines and "+line eighteen" in hunks[1].lines


def test_no_newline_marker_follows_last_line():
    hunks = compute_hunks("doc.md", "a\nb", "a\nb\nc")

    assert len(hunks) == 1
    lines = hunks[0].lines
    assert lines.count(NO_NEWLINE_MARKER) == 2
    assert lines[lines.index("-b") + 1] == NO_NEWLINE_MARKER


def test_reverse_patch_swaps_ranges_and_prefixes():
    hunk = compute_hunks("notes.md", "hello\n", "hello\nworld\n")[0]

    patch = build_reverse_patch("notes.md", hunk)

    assert patch == "--- notes.md\n+++ notes.md\n@@ -1,2 +1,1 @@\n hello\n-world\n"


@pytest.mark.parametrize(
    "before,after",
    [
        ("hello\n", "hello\nworld\n"),
        ("", "x\ny\n"),
        ("x\n", ""),
        ("a\nb", "a\nb\nc"),
        ("a\nb\nc\n", "a\nc"),
        ("one\r\ntwo\r\n", "one\r\nTWO\r\n"),
    ],
)
def test_reverse_patch_restores_before(before, after):
    """Reverting the only hunk of a change yields the original text."""
    hunks = compute_hunks("page.md", before, after)
    assert len(hunks) == 1

    restored = apply_reverse_patch(after, build_reverse_patch("page.md", hunks[0]))

    assert restored == before


def test_reverse_patch_reverts_one_hunk_only():
    before = numbered_lines(20)
    after = before.replace("line 2\n", "line two\n").replace("line 18\n", "line eighteen\n")
    first, second = compute_hunks("doc.md", before, after)

    only_second = apply_reverse_patch(after, build_reverse_patch("doc.md", second))
    assert "line 18\n" in only_second
    assert "line two\n" in only_second

    both = apply_reverse_patch(only_second, build_reverse_patch("doc.md", first))
    assert both == before


def test_reverse_patch_tolerates_shifted_content():
    hunk = compute_hunks("notes.md", "hello\n", "hello\nworld\n")[0]

    restored = apply_reverse_patch(
        "intro\nhello\nworld\n", build_reverse_patch("notes.md", hunk)
    )

    assert restored == "intro\nhello\n"


def test_reverse_patch_fails_when_content_diverged():
    """A stale hunk is reported as a failure rather than corrupting the file."""
    hunk = compute_hunks("notes.md", "hello\n", "hello\nworld\n")[0]

    result = apply_reverse_patch("hello\nWORLD\n", build_reverse_patch("notes.md", hunk))

    assert result is None


def test_apply_rejects_text_without_hunks():
    assert apply_reverse_patch("hello\n", "not a patch") is None
