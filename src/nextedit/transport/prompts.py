"""Prompt rendering for next-edit backends and cleanup of their output."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Dict, List

if TYPE_CHECKING:  # pragma: no cover
    from ..core.context import PredictionContext

__all__ = [
    "CURSOR_MARKER",
    "REGION_END",
    "REGION_START",
    "SYSTEM_PROMPT",
    "build_chat_messages",
    "clean_completion",
    "render_prompt",
]

REGION_START = "<|editable_region_start|>"
REGION_END = "<|editable_region_end|>"
CURSOR_MARKER = "<|cursor|>"

SYSTEM_PROMPT = (
    "You predict the next edit a developer will make. "
    "Rewrite the text between the editable region markers, applying the edit "
    "the recent changes suggest. Reply with the rewritten region only, "
    "without markers, explanations or code fences."
)

_FENCE_RE = re.compile(r"^\s*```[\w+-]*\s*\n(?P<body>.*?)\n?\s*```\s*$", re.DOTALL)


def render_prompt(context: PredictionContext) -> str:
    """Render ``context`` as a single completion prompt."""

    sections: List[str] = []
    filepath = context.filepath or "untitled"
    if context.history:
        events = "\n\n".join(f"User {entry.kind} in {entry.filepath or filepath}:\n{entry.diff}" for entry in context.history)
        sections.append(f"### Recent edits\n{events}")
    if context.selection is not None:
        selection = context.selection
        body = "\n".join(selection.lines)
        sections.append(
            f"### Selection from {selection.filepath or filepath} "
            f"(lines {selection.start_line}-{selection.end_line})\n{body}"
        )
    sections.append(f"### {filepath}\n{_editable_excerpt(context)}")
    sections.append("### Rewritten editable region\n")
    return "\n\n".join(sections)


def build_chat_messages(context: PredictionContext) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": render_prompt(context)},
    ]


def clean_completion(text: str) -> str:
    """Strip code fences and any markers the model echoed back."""

    cleaned = text or ""
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group("body")
    if REGION_START in cleaned:
        cleaned = cleaned.split(REGION_START, 1)[1]
        cleaned = cleaned.removeprefix("\n")
    if REGION_END in cleaned:
        cleaned = cleaned.split(REGION_END, 1)[0]
        cleaned = cleaned.removesuffix("\n")
    return cleaned.replace(CURSOR_MARKER, "")


def _editable_excerpt(context: PredictionContext) -> str:
    lines = list(context.lines)
    cursor_index = context.cursor[0] - 1
    if 0 <= cursor_index < len(lines):
        line = lines[cursor_index]
        column = max(0, min(context.cursor[1], len(line)))
        lines[cursor_index] = f"{line[:column]}{CURSOR_MARKER}{line[column:]}"
    before = lines[: context.window_start]
    window = lines[context.window_start : context.window_end]
    after = lines[context.window_end :]
    parts = [*before, REGION_START, *window, REGION_END, *after]
    return "\n".join(parts)
