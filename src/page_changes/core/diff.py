"""Line diff statistics, hunk extraction and reverse patching.

Hunk lines use unified diff prefixes (" ", "+", "-") without their line
terminators. A line that has no trailing newline in the file is followed by
a NO_NEWLINE_MARKER line, so patches round-trip files that do not end in a
newline.
"""

import difflib
import re
from typing import List, Optional, Tuple

from page_changes.models.change import ChangeHunk, FileStats

NO_NEWLINE_MARKER = "\\ No newline at end of file"
DEFAULT_CONTEXT_LINES = 4

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def _split_lines(content: str) -> List[str]:
    """Split on "\\n" only, keeping terminators; no phantom empty last line."""
    parts = content.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _matcher(before_lines: List[str], after_lines: List[str]) -> difflib.SequenceMatcher:
    return difflib.SequenceMatcher(None, before_lines, after_lines, autojunk=False)


def _hunk_line(prefix: str, line: str) -> List[str]:
    if line.endswith("\n"):
        return [prefix + line[:-1]]
    return [prefix + line, NO_NEWLINE_MARKER]


def _range_start(start: int, count: int) -> int:
    # Unified diff convention: an empty range points at the line before it
    return start + 1 if count else start


def compute_stats(before_content: str, after_content: str) -> FileStats:
    """Count added and removed lines between two texts."""
    if before_content == after_content:
        return FileStats()

    before_lines = _split_lines(before_content)
    after_lines = _split_lines(after_content)
    stats = FileStats()
    for tag, i1, i2, j1, j2 in _matcher(before_lines, after_lines).get_opcodes():
        if tag in ("delete", "replace"):
            stats.deletions += i2 - i1
        if tag in ("insert", "replace"):
            stats.additions += j2 - j1
    return stats


def compute_hunks(
    path: str,
    before_content: str,
    after_content: str,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> List[ChangeHunk]:
    """Group the line diff into contiguous hunks with stable ids."""
    if before_content == after_content:
        return []

    before_lines = _split_lines(before_content)
    after_lines = _split_lines(after_content)
    matcher = _matcher(before_lines, after_lines)

    hunks = []
    for index, group in enumerate(matcher.get_grouped_opcodes(context_lines)):
        i1, i2 = group[0][1], group[-1][2]
        j1, j2 = group[0][3], group[-1][4]

        lines: List[str] = []
        for tag, a1, a2, b1, b2 in group:
            if tag == "equal":
                for line in before_lines[a1:a2]:
                    lines.extend(_hunk_line(" ", line))
                continue
            if tag in ("delete", "replace"):
                for line in before_lines[a1:a2]:
                    lines.extend(_hunk_line("-", line))
            if tag in ("insert", "replace"):
                for line in after_lines[b1:b2]:
                    lines.extend(_hunk_line("+", line))

        old_start = _range_start(i1, i2 - i1)
        new_start = _range_start(j1, j2 - j1)
        hunks.append(
            ChangeHunk(
                id=f"{path}:{old_start}:{new_start}:{index}",
                old_start=old_start,
                old_lines=i2 - i1,
                new_start=new_start,
                new_lines=j2 - j1,
                lines=lines,
                adds=sum(1 for line in lines if line.startswith("+")),
                removes=sum(1 for line in lines if line.startswith("-")),
            )
        )
    return hunks


def format_hunk_header(old_start: int, old_lines: int, new_start: int, new_lines: int) -> str:
    return f"@@ -{old_start},{old_lines} +{new_start},{new_lines} @@"


def build_reverse_patch(path: str, hunk: ChangeHunk) -> str:
    """Build a patch that turns the hunk's new side back into its old side."""
    reversed_lines = []
    for line in hunk.lines:
        if line.startswith("+"):
            reversed_lines.append("-" + line[1:])
        elif line.startswith("-"):
            reversed_lines.append("+" + line[1:])
        else:
            reversed_lines.append(line)

    patch_lines = [
        f"--- {path}",
        f"+++ {path}",
        format_hunk_header(hunk.new_start, hunk.new_lines, hunk.old_start, hunk.old_lines),
        *reversed_lines,
    ]
    return "\n".join(patch_lines) + "\n"


def _parse_patch(patch_text: str) -> List[Tuple[int, int, List[str]]]:
    """Parse unified diff text into (old_start, old_lines, body) tuples."""
    hunks: List[Tuple[int, int, List[str]]] = []
    body: Optional[List[str]] = None
    for line in patch_text.split("\n"):
        match = _HUNK_HEADER.match(line)
        if match:
            old_start = int(match.group(1))
            old_lines = int(match.group(2)) if match.group(2) is not None else 1
            body = []
            hunks.append((old_start, old_lines, body))
            continue
        if body is None:
            # File headers before the first hunk
            continue
        if line.startswith(("+", "-", " ", "\\")):
            body.append(line)
        elif line == "":
            body.append(line)
    return hunks


def _hunk_sides(body: List[str]) -> Tuple[List[str], List[str]]:
    """Rebuild the exact old and new line lists, terminators included."""
    old_side: List[str] = []
    new_side: List[str] = []
    # Trailing empty strings come from the final newline of the patch text
    while body and body[-1] == "":
        body = body[:-1]

    for position, line in enumerate(body):
        if line.startswith("\\"):
            continue
        no_newline = position + 1 < len(body) and body[position + 1].startswith("\\")
        prefix, text = (line[0], line[1:]) if line else (" ", "")
        if not no_newline:
            text += "\n"
        if prefix in (" ", "-"):
            old_side.append(text)
        if prefix in (" ", "+"):
            new_side.append(text)
    return old_side, new_side


def _candidate_offsets(expected: int, limit: int):
    yield expected
    for distance in range(1, limit + 1):
        if expected - distance >= 0:
            yield expected - distance
        if expected + distance <= limit:
            yield expected + distance


def apply_patch(content: str, patch_text: str) -> Optional[str]:
    """Apply a unified diff to content.

    Each hunk is tried at its recorded position first, then at increasing
    distances from it. Returns None when any hunk's context cannot be found.
    """
    parsed = _parse_patch(patch_text)
    if not parsed:
        return None

    lines = _split_lines(content)
    shift = 0
    for old_start, old_lines, body in parsed:
        old_side, new_side = _hunk_sides(body)
        if len(old_side) != old_lines:
            return None

        expected = (old_start - 1 if old_lines else old_start) + shift
        expected = min(max(expected, 0), len(lines))
        limit = len(lines) - len(old_side)
        if limit < 0:
            return None

        for position in _candidate_offsets(min(expected, limit), limit):
            if lines[position : position + len(old_side)] == old_side:
                lines[position : position + len(old_side)] = new_side
                shift += len(new_side) - len(old_side)
                break
        else:
            return None
    return "".join(lines)


def apply_reverse_patch(content: str, patch_text: str) -> Optional[str]:
    """Apply a reverse patch, or return None when the content has diverged."""
    return apply_patch(content, patch_text)
