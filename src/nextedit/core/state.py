"""Per-document prediction state and the store that owns it.

All access happens on the engine's event loop, so records are plain mutable
dataclasses without locks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Literal, Optional

from .diff import Hunk, join_lines

__all__ = [
    "DocumentState",
    "HistoryEntry",
    "HistoryKind",
    "RequestStatus",
    "SelectionRegion",
    "Snapshot",
    "StateStore",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_HISTORY_MAX = 20

HistoryKind = Literal["edit", "accepted", "rejected"]


class RequestStatus(str, Enum):
    """Lifecycle position of a document; exactly one holds at a time."""

    IDLE = "idle"
    DEBOUNCING = "debouncing"
    IN_FLIGHT = "inFlight"
    SHOWING_PREDICTION = "showingPrediction"


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable copy of a document's content at a known version."""

    lines: tuple[str, ...]
    version: int
    cursor: tuple[int, int] = (1, 0)
    captured_at: float = field(default_factory=time.monotonic)

    @property
    def text(self) -> str:
        return join_lines(self.lines)


@dataclass(frozen=True, slots=True)
class SelectionRegion:
    """A selection captured for context, with the lines it covered."""

    filepath: str
    start_line: int
    end_line: int
    lines: tuple[str, ...]
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """A past edit, accepted prediction or rejected prediction."""

    kind: HistoryKind
    filepath: str
    diff: str
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class DocumentState:
    """Prediction bookkeeping for a single open document."""

    document_id: str
    history_max: int = DEFAULT_HISTORY_MAX
    baseline: Optional[Snapshot] = None
    history: deque[HistoryEntry] = field(init=False)
    selection: Optional[SelectionRegion] = None
    pending_snapshot: Optional[Snapshot] = None
    status: RequestStatus = RequestStatus.IDLE
    active_hunks: list[Hunk] = field(default_factory=list)
    suppress_next_trigger: bool = False
    request_seq: int = 0
    editing: bool = False
    prediction_origin: Optional[Snapshot] = None
    inflight: Optional[asyncio.Task] = None

    def __post_init__(self) -> None:
        self.history = deque(maxlen=max(1, int(self.history_max)))

    @property
    def has_prediction(self) -> bool:
        return self.status is RequestStatus.SHOWING_PREDICTION and bool(self.active_hunks)

    @property
    def is_in_flight(self) -> bool:
        return self.status is RequestStatus.IN_FLIGHT

    def consume_suppress_trigger(self) -> bool:
        """Return and reset the one-shot suppression flag."""

        if not self.suppress_next_trigger:
            return False
        self.suppress_next_trigger = False
        return True

    def reset_prediction(self) -> None:
        """Drop every per-request artefact; used on all terminal transitions."""

        self.active_hunks = []
        self.pending_snapshot = None
        self.prediction_origin = None
        self.inflight = None

    def resize_history(self, history_max: int) -> None:
        self.history_max = max(1, int(history_max))
        self.history = deque(self.history, maxlen=self.history_max)


class StateStore:
    """Owns every :class:`DocumentState`, keyed by document identifier."""

    def __init__(self, *, history_max: int = DEFAULT_HISTORY_MAX) -> None:
        self._history_max = max(1, int(history_max))
        self._states: Dict[str, DocumentState] = {}

    @property
    def history_max(self) -> int:
        return self._history_max

    def set_history_max(self, history_max: int) -> None:
        self._history_max = max(1, int(history_max))
        for state in self._states.values():
            state.resize_history(self._history_max)

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------
    def get(self, document_id: str) -> DocumentState | None:
        return self._states.get(document_id)

    def ensure(self, document_id: str) -> DocumentState:
        state = self._states.get(document_id)
        if state is None:
            state = DocumentState(document_id=document_id, history_max=self._history_max)
            self._states[document_id] = state
            LOGGER.debug("StateStore: tracking document %s", document_id)
        return state

    def clear(self, document_id: str) -> DocumentState | None:
        state = self._states.pop(document_id, None)
        if state is not None:
            LOGGER.debug("StateStore: dropped document %s", document_id)
        return state

    def clear_all(self) -> None:
        self._states.clear()

    def tracked_documents(self) -> list[str]:
        return list(self._states)

    def __iter__(self) -> Iterator[DocumentState]:
        return iter(list(self._states.values()))

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def append_history(self, document_id: str, entry: HistoryEntry) -> None:
        self.ensure(document_id).history.append(entry)

    def history(self, document_id: str, limit: int | None = None) -> tuple[HistoryEntry, ...]:
        state = self._states.get(document_id)
        if state is None:
            return ()
        entries = tuple(state.history)
        if limit is None:
            return entries
        if limit <= 0:
            return ()
        return entries[-limit:]

    def history_count(self, document_id: str) -> int:
        state = self._states.get(document_id)
        return len(state.history) if state is not None else 0

    def clear_history(self, document_id: str | None = None) -> None:
        targets = [self._states[document_id]] if document_id in self._states else []
        if document_id is None:
            targets = list(self._states.values())
        for state in targets:
            state.history.clear()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def set_selection(self, document_id: str, region: SelectionRegion) -> None:
        self.ensure(document_id).selection = region

    def get_selection(self, document_id: str) -> SelectionRegion | None:
        state = self._states.get(document_id)
        return state.selection if state is not None else None

    def clear_selection(self, document_id: str | None = None) -> None:
        if document_id is None:
            for state in self._states.values():
                state.selection = None
            return
        state = self._states.get(document_id)
        if state is not None:
            state.selection = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def is_in_flight(self, document_id: str) -> bool:
        state = self._states.get(document_id)
        return bool(state and state.is_in_flight)

    def has_pending_snapshot(self, document_id: str) -> bool:
        state = self._states.get(document_id)
        return bool(state and state.pending_snapshot is not None)

    def consume_suppress_trigger(self, document_id: str) -> bool:
        state = self._states.get(document_id)
        return bool(state and state.consume_suppress_trigger())
