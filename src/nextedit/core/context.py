"""Assembles the payload sent to the prediction backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Optional

from .diff import join_lines, split_lines
from .state import HistoryEntry, SelectionRegion, Snapshot, StateStore

if TYPE_CHECKING:  # pragma: no cover
    from ..editor.workspace import DocumentHost
    from ..services.settings import ContextSettings

__all__ = ["ContextAssembler", "PredictionContext", "PredictionRequest"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PredictionContext:
    """Everything the backend sees for one request.

    ``window_start``/``window_end`` delimit the editable region as 0-based,
    end-exclusive indexes into ``lines``.
    """

    document_id: str
    filepath: str
    filetype: str
    cursor: tuple[int, int]
    lines: tuple[str, ...]
    window_start: int
    window_end: int
    history: tuple[HistoryEntry, ...] = ()
    selection: Optional[SelectionRegion] = None

    @property
    def window_lines(self) -> tuple[str, ...]:
        return self.lines[self.window_start : self.window_end]

    @property
    def window_text(self) -> str:
        return join_lines(self.window_lines)

    def merge_candidate(self, window_text: str) -> list[str]:
        """Splice a rewritten editable window back into the full document."""

        return [
            *self.lines[: self.window_start],
            *split_lines(window_text),
            *self.lines[self.window_end :],
        ]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "document_id": self.document_id,
            "filepath": self.filepath,
            "filetype": self.filetype,
            "cursor": list(self.cursor),
            "window": {"start": self.window_start, "end": self.window_end},
            "window_text": self.window_text,
            "history": [
                {"kind": entry.kind, "filepath": entry.filepath, "diff": entry.diff}
                for entry in self.history
            ],
        }
        if self.selection is not None:
            payload["selection"] = {
                "filepath": self.selection.filepath,
                "start_line": self.selection.start_line,
                "end_line": self.selection.end_line,
                "lines": list(self.selection.lines),
            }
        return payload


@dataclass(frozen=True, slots=True)
class PredictionRequest:
    """A request tagged with the trigger sequence it belongs to."""

    document_id: str
    sequence: int
    snapshot_version: int
    context: PredictionContext
    snapshot: Snapshot


class ContextAssembler:
    """Reads the state store and the host to build :class:`PredictionRequest` objects."""

    def __init__(self, store: StateStore, host: DocumentHost, settings: ContextSettings) -> None:
        self._store = store
        self._host = host
        self._settings = settings

    @property
    def settings(self) -> ContextSettings:
        return self._settings

    def apply_settings(self, settings: ContextSettings) -> None:
        """Swap the context configuration, dropping captured context when disabled."""

        self._settings = settings
        if not settings.enabled:
            self._store.clear_history()
            self._store.clear_selection()
        elif not settings.selection.enabled:
            self._store.clear_selection()

    def build(self, document_id: str, snapshot: Snapshot, sequence: int) -> PredictionRequest:
        info = self._host.describe(document_id)
        filepath = info.path.as_posix() if info.path is not None else ""
        lines = snapshot.lines
        cursor_line = max(1, min(snapshot.cursor[0], len(lines)))
        before = max(0, int(self._settings.lines_before))
        after = max(0, int(self._settings.lines_after))
        window_start = max(0, cursor_line - 1 - before)
        window_end = min(len(lines), cursor_line + after)

        history: tuple[HistoryEntry, ...] = ()
        selection: SelectionRegion | None = None
        if self._settings.enabled:
            history = self._store.history(document_id, limit=self._settings.history_items)
            selection = self._valid_selection(document_id, len(lines))

        context = PredictionContext(
            document_id=document_id,
            filepath=filepath,
            filetype=info.filetype,
            cursor=(cursor_line, snapshot.cursor[1]),
            lines=lines,
            window_start=window_start,
            window_end=window_end,
            history=history,
            selection=selection,
        )
        return PredictionRequest(
            document_id=document_id,
            sequence=sequence,
            snapshot_version=snapshot.version,
            context=context,
            snapshot=snapshot,
        )

    def capture_selection(self, document_id: str, region: SelectionRegion) -> bool:
        """Store ``region`` as the document's selection when capture is enabled."""

        if not (self._settings.enabled and self._settings.selection.enabled):
            return False
        if not region.lines:
            return False
        max_lines = max(1, int(self._settings.selection.max_lines))
        if len(region.lines) > max_lines:
            region = replace(
                region,
                lines=region.lines[:max_lines],
                end_line=region.start_line + max_lines - 1,
            )
        self._store.set_selection(document_id, region)
        LOGGER.debug(
            "Selection captured: %s lines %d-%d (%d lines)",
            region.filepath or document_id,
            region.start_line,
            region.end_line,
            len(region.lines),
        )
        return True

    def _valid_selection(self, document_id: str, line_count: int) -> SelectionRegion | None:
        if not self._settings.selection.enabled:
            return None
        selection = self._store.get_selection(document_id)
        if selection is None:
            return None
        if selection.start_line < 1 or selection.end_line > line_count:
            return None
        return selection
