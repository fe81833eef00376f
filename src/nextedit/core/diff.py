"""Line-based diff helpers turning candidate text into applyable hunks."""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

__all__ = [
    "Hunk",
    "HunkKind",
    "apply_hunks",
    "compute_hunks",
    "format_unified_diff",
    "join_lines",
    "patch_lines",
    "split_lines",
]


class HunkKind(str, Enum):
    """Shape of a single contiguous change."""

    INSERT = "insert"
    DELETE = "delete"
    REPLACE = "replace"


@dataclass(frozen=True, slots=True)
class Hunk:
    """A minimal contiguous change expressed in baseline line coordinates.

    ``start_line`` is 1-based. Inserts place ``new_lines`` before
    ``start_line`` and cover an empty range (``end_line == start_line - 1``).
    """

    kind: HunkKind
    start_line: int
    old_lines: tuple[str, ...] = ()
    new_lines: tuple[str, ...] = ()

    @property
    def end_line(self) -> int:
        return self.start_line + len(self.old_lines) - 1

    @property
    def text(self) -> str:
        """Replacement content (empty for deletions)."""

        return join_lines(self.new_lines)

    @property
    def line_delta(self) -> int:
        return len(self.new_lines) - len(self.old_lines)

    def shifted(self, delta: int) -> "Hunk":
        if not delta:
            return self
        return Hunk(
            kind=self.kind,
            start_line=self.start_line + delta,
            old_lines=self.old_lines,
            new_lines=self.new_lines,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "old_lines": list(self.old_lines),
            "new_lines": list(self.new_lines),
        }


def split_lines(text: str) -> list[str]:
    """Split ``text`` into lines without terminators.

    A trailing newline yields an empty final entry so that
    :func:`join_lines` restores the exact input.
    """

    return text.split("\n")


def join_lines(lines: Iterable[str]) -> str:
    return "\n".join(lines)


def compute_hunks(
    baseline: str | Sequence[str],
    candidate: str | Sequence[str],
    *,
    ignore_whitespace: bool = False,
) -> list[Hunk]:
    """Return the ordered, non-overlapping hunks turning ``baseline`` into ``candidate``.

    Alignment comes from :class:`difflib.SequenceMatcher` with ``autojunk``
    disabled, so identical inputs always produce the same hunk sequence and
    ties resolve toward the earliest matching line. Adjacent delete/insert
    runs touching the same position are merged into a single replace.
    """

    old = split_lines(baseline) if isinstance(baseline, str) else list(baseline)
    new = split_lines(candidate) if isinstance(candidate, str) else list(candidate)
    if old == new:
        return []

    if ignore_whitespace:
        old_keys = [_normalize_whitespace(line) for line in old]
        new_keys = [_normalize_whitespace(line) for line in new]
    else:
        old_keys, new_keys = old, new

    matcher = difflib.SequenceMatcher(None, old_keys, new_keys, autojunk=False)
    hunks: list[Hunk] = []
    last_end: tuple[int, int] | None = None
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        old_slice = tuple(old[i1:i2])
        new_slice = tuple(new[j1:j2])
        touches_previous = last_end == (i1, j1)
        last_end = (i2, j2)
        if touches_previous:
            previous = hunks[-1]
            merged_old = previous.old_lines + old_slice
            merged_new = previous.new_lines + new_slice
            hunks[-1] = Hunk(
                kind=_classify(merged_old, merged_new),
                start_line=previous.start_line,
                old_lines=merged_old,
                new_lines=merged_new,
            )
            continue
        hunks.append(
            Hunk(
                kind=_classify(old_slice, new_slice),
                start_line=i1 + 1,
                old_lines=old_slice,
                new_lines=new_slice,
            )
        )
    return hunks


def apply_hunks(baseline: str | Sequence[str], hunks: Sequence[Hunk]) -> str:
    """Apply ``hunks`` (sorted, baseline coordinates) to ``baseline``.

    Raises:
        ValueError: If a hunk's ``old_lines`` do not match the baseline.
    """

    lines = split_lines(baseline) if isinstance(baseline, str) else list(baseline)
    return join_lines(patch_lines(lines, hunks))


def patch_lines(lines: Sequence[str], hunks: Sequence[Hunk]) -> list[str]:
    """Line-list variant of :func:`apply_hunks`; an emptied range stays empty."""

    lines = list(lines)
    for hunk in sorted(hunks, key=lambda entry: entry.start_line, reverse=True):
        start = hunk.start_line - 1
        end = start + len(hunk.old_lines)
        if start < 0 or end > len(lines):
            raise ValueError(f"Hunk at line {hunk.start_line} falls outside the baseline")
        if tuple(lines[start:end]) != hunk.old_lines:
            raise ValueError(f"Hunk at line {hunk.start_line} does not match the baseline")
        lines[start:end] = list(hunk.new_lines)
    return lines


def format_unified_diff(
    original: str,
    updated: str,
    *,
    filename: str | None = None,
    context: int = 3,
) -> str:
    """Render a unified diff string, or ``""`` when the texts are identical."""

    source_name = filename.strip() if isinstance(filename, str) and filename.strip() else "document.txt"
    diff = difflib.unified_diff(
        split_lines(original),
        split_lines(updated),
        fromfile=f"a/{source_name}",
        tofile=f"b/{source_name}",
        lineterm="",
        n=max(0, int(context)),
    )
    return "\n".join(diff)


def _classify(old_lines: Sequence[str], new_lines: Sequence[str]) -> HunkKind:
    if not old_lines:
        return HunkKind.INSERT
    if not new_lines:
        return HunkKind.DELETE
    return HunkKind.REPLACE


def _normalize_whitespace(line: str) -> str:
    return " ".join(line.split())
