"""Prediction engine core: diffing, per-document state, timers and events.

Import :class:`~nextedit.core.engine.PredictionEngine` from its module.
"""

from .diff import Hunk, HunkKind, apply_hunks, compute_hunks, format_unified_diff
from .errors import (
    ConfigurationError,
    EmptyDiff,
    ErrorCode,
    InvalidStateTransition,
    NextEditError,
    StaleResponse,
    TransportError,
    TransportTimeout,
)
from .events import (
    EventBus,
    PredictionCleared,
    PredictionDiscarded,
    PredictionFailed,
    PredictionRequested,
    PredictionShown,
)
from .state import DocumentState, HistoryEntry, RequestStatus, SelectionRegion, Snapshot, StateStore

__all__ = [
    "ConfigurationError",
    "DocumentState",
    "EmptyDiff",
    "ErrorCode",
    "EventBus",
    "HistoryEntry",
    "Hunk",
    "HunkKind",
    "InvalidStateTransition",
    "NextEditError",
    "PredictionCleared",
    "PredictionDiscarded",
    "PredictionFailed",
    "PredictionRequested",
    "PredictionShown",
    "RequestStatus",
    "SelectionRegion",
    "Snapshot",
    "StaleResponse",
    "StateStore",
    "TransportError",
    "TransportTimeout",
    "apply_hunks",
    "compute_hunks",
    "format_unified_diff",
]
