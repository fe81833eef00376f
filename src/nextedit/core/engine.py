"""Request lifecycle manager: the per-document prediction state machine.

Every public method is synchronous and must be called from the event loop
that owns the engine. The only suspension points are the debounce timers
(:class:`~nextedit.core.scheduler.DebounceScheduler`) and the transport
round trip, which runs as one :class:`asyncio.Task` per request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Optional, Sequence

from ..editor.workspace import DocumentHost, resolve_path
from ..services.settings import Settings
from .context import ContextAssembler, PredictionRequest
from .diff import Hunk, compute_hunks, format_unified_diff, join_lines, patch_lines, split_lines
from .errors import (
    EmptyDiff,
    InvalidStateTransition,
    NextEditError,
    StaleResponse,
    TransportError,
    TransportTimeout,
)
from .events import (
    ClearReason,
    EventBus,
    PredictionCleared,
    PredictionDiscarded,
    PredictionFailed,
    PredictionRequested,
    PredictionShown,
)
from .scheduler import DebounceScheduler, TimerKind
from .state import DocumentState, HistoryEntry, HistoryKind, RequestStatus, SelectionRegion, Snapshot, StateStore

if TYPE_CHECKING:  # pragma: no cover
    from ..transport.base import PredictionResponse, TransportClient
    from ..utils.telemetry import TelemetryClient

__all__ = ["EngineStatus", "PredictionEngine"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EngineStatus:
    """Read-only diagnostics snapshot."""

    initialized: bool
    tracked_documents: int
    document_id: Optional[str] = None
    status: Optional[str] = None
    has_prediction: bool = False
    has_baseline: bool = False
    in_flight: bool = False
    has_pending_snapshot: bool = False
    history_count: int = 0
    request_seq: int = 0
    hunk_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "tracked_documents": self.tracked_documents,
            "document_id": self.document_id,
            "status": self.status,
            "has_prediction": self.has_prediction,
            "has_baseline": self.has_baseline,
            "in_flight": self.in_flight,
            "has_pending_snapshot": self.has_pending_snapshot,
            "history_count": self.history_count,
            "request_seq": self.request_seq,
            "hunk_count": self.hunk_count,
        }


class PredictionEngine:
    """Coordinates debounce timers, transport calls and hunk application per document."""

    def __init__(
        self,
        host: DocumentHost,
        transport: TransportClient,
        settings: Settings | None = None,
        *,
        bus: EventBus | None = None,
        store: StateStore | None = None,
        scheduler: DebounceScheduler | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._host = host
        self._transport = transport
        self._bus = bus or EventBus()
        self._store = store or StateStore(history_max=self._settings.history_max)
        self._scheduler = scheduler or DebounceScheduler()
        self._assembler = ContextAssembler(self._store, host, self._settings.context)
        self._telemetry = telemetry
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def scheduler(self) -> DebounceScheduler:
        return self._scheduler

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        LOGGER.debug("Prediction engine initialized (debounce=%sms)", self._settings.debounce_ms)

    async def shutdown(self) -> None:
        """Cancel every timer and request and forget all documents."""

        if not self._initialized:
            return
        self._initialized = False
        self._scheduler.cancel_all()
        pending: list[asyncio.Task] = []
        for state in self._store:
            task = state.inflight
            if task is not None and not task.done():
                task.cancel()
                pending.append(task)
            if state.has_prediction:
                self._bus.publish(PredictionCleared(document_id=state.document_id, reason="closed"))
        self._store.clear_all()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._telemetry is not None:
            self._telemetry.flush()
        LOGGER.debug("Prediction engine shut down")

    def apply_settings(self, settings: Settings) -> None:
        """Adopt new settings; pending timers keep the delay they were armed with."""

        self._settings = settings
        self._store.set_history_max(settings.history_max)
        self._assembler.apply_settings(settings.context)

    # ------------------------------------------------------------------
    # Host notifications
    # ------------------------------------------------------------------
    def on_enter_editing(self, document_id: str) -> None:
        if not self._active("enter_editing"):
            return
        state = self._store.ensure(document_id)
        state.baseline = self._capture(document_id)
        state.editing = True
        LOGGER.debug("Baseline captured for %s at version %d", document_id, state.baseline.version)

    def on_document_changed(self, document_id: str) -> None:
        if not self._active("document_changed"):
            return
        self._scheduler.cancel(document_id, TimerKind.IDLE)
        self.cancel_prefetch(document_id)
        state = self._store.ensure(document_id)
        if state.consume_suppress_trigger():
            LOGGER.debug("Change on %s caused by the engine; not triggering", document_id)
            return
        if state.has_prediction and self._drifted(state):
            self._clear_prediction(state, "stale")
        self.trigger(document_id)

    def on_cursor_moved(self, document_id: str) -> None:
        if not self._active("cursor_moved"):
            return
        self._scheduler.cancel(document_id, TimerKind.IDLE)
        state = self._store.ensure(document_id)
        if state.editing or not self._settings.normal_mode.enabled:
            return
        if state.status is not RequestStatus.IDLE:
            return
        self._scheduler.schedule(
            document_id,
            self._settings.idle_debounce_ms,
            partial(self.trigger_now, document_id),
            kind=TimerKind.IDLE,
        )

    def on_leave_editing(self, document_id: str) -> None:
        if not self._active("leave_editing"):
            return
        state = self._store.get(document_id)
        if state is None:
            return
        self.cancel_prefetch(document_id)
        if state.baseline is not None:
            current = self._host.get_lines(document_id)
            diff = format_unified_diff(
                state.baseline.text,
                join_lines(current),
                filename=self._filepath(document_id),
            )
            if diff:
                self._record_history(document_id, "edit", diff)
        state.baseline = None
        state.editing = False
        if state.has_prediction and not self._settings.normal_mode.enabled:
            self._clear_prediction(state, "cleared")

    def on_document_closed(self, document_id: str) -> None:
        self._scheduler.cancel(document_id)
        state = self._store.clear(document_id)
        if state is None:
            return
        task = state.inflight
        if task is not None and not task.done():
            task.cancel()
        if state.has_prediction:
            self._bus.publish(PredictionCleared(document_id=document_id, reason="closed"))

    def on_selection_captured(self, document_id: str, region: SelectionRegion) -> bool:
        if not self._active("selection_captured"):
            return False
        return self._assembler.capture_selection(document_id, region)

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------
    def trigger(self, document_id: str) -> bool:
        """Arm (or re-arm) the edit debounce timer. Ignored while a prediction is visible."""

        if not self._active("trigger"):
            return False
        state = self._store.ensure(document_id)
        if state.status is RequestStatus.SHOWING_PREDICTION:
            LOGGER.debug("Trigger ignored for %s: prediction visible", document_id)
            return False
        state.request_seq += 1
        self._scheduler.schedule(
            document_id,
            self._settings.debounce_ms,
            partial(self._on_debounce_fired, document_id),
            kind=TimerKind.EDIT,
        )
        if state.status is not RequestStatus.DEBOUNCING:
            self._transition(state, RequestStatus.DEBOUNCING)
        return True

    def trigger_now(self, document_id: str) -> bool:
        """Skip the debounce and issue a request immediately, from ``idle`` only."""

        if not self._active("trigger_now"):
            return False
        state = self._store.ensure(document_id)
        if state.status is not RequestStatus.IDLE:
            self._invalid("trigger_now", state)
            return False
        self._scheduler.cancel(document_id, TimerKind.IDLE)
        state.request_seq += 1
        return self._issue_request(state)

    def _on_debounce_fired(self, document_id: str) -> None:
        state = self._store.get(document_id)
        if state is None or state.status is not RequestStatus.DEBOUNCING:
            return
        self._issue_request(state)

    def _issue_request(self, state: DocumentState) -> bool:
        document_id = state.document_id
        try:
            snapshot = self._capture(document_id)
            if state.baseline is None:
                state.baseline = snapshot
            request = self._assembler.build(document_id, snapshot, state.request_seq)
        except Exception:
            LOGGER.exception("Unable to assemble prediction request for %s", document_id)
            self._to_idle(state)
            return False

        previous = state.inflight
        if previous is not None and not previous.done():
            previous.cancel()
        state.pending_snapshot = snapshot
        self._transition(state, RequestStatus.IN_FLIGHT)
        state.inflight = self._scheduler.loop.create_task(
            self._run_request(request),
            name=f"nextedit-predict-{document_id}-{request.sequence}",
        )
        self._bus.publish(PredictionRequested(document_id=document_id, sequence=request.sequence))
        if self._telemetry is not None:
            self._telemetry.requested(document_id, request.sequence)
        return True

    # ------------------------------------------------------------------
    # Request execution
    # ------------------------------------------------------------------
    async def _run_request(self, request: PredictionRequest) -> None:
        timeout = self._settings.in_flight_timeout_ms / 1000.0
        try:
            if timeout > 0:
                response = await asyncio.wait_for(self._transport.predict(request), timeout=timeout)
            else:
                response = await self._transport.predict(request)
        except asyncio.CancelledError:
            LOGGER.debug("Request %s#%d cancelled", request.document_id, request.sequence)
            raise
        except asyncio.TimeoutError:
            self._handle_failure(
                request,
                TransportTimeout(
                    message=f"No response within {timeout:.3g}s",
                    timeout_seconds=timeout,
                ),
            )
            return
        except TransportError as exc:
            self._handle_failure(request, exc)
            return
        except Exception as exc:
            LOGGER.exception("Transport raised an unexpected error for %s", request.document_id)
            self._handle_failure(
                request,
                TransportError(
                    message=str(exc) or type(exc).__name__,
                    details={"exception": type(exc).__name__},
                ),
            )
            return
        self._handle_response(request, response)

    def _is_current(self, request: PredictionRequest) -> bool:
        state = self._store.get(request.document_id)
        return (
            state is not None
            and state.request_seq == request.sequence
            and state.status is RequestStatus.IN_FLIGHT
        )

    def _handle_failure(self, request: PredictionRequest, error: TransportError) -> None:
        if not self._is_current(request):
            self._discard_stale(request)
            return
        state = self._store.ensure(request.document_id)
        LOGGER.warning("Prediction failed for %s (seq=%d): %s", request.document_id, request.sequence, error)
        self._to_idle(state)
        self._bus.publish(
            PredictionFailed(
                document_id=request.document_id,
                sequence=request.sequence,
                error_code=error.error_code,
                message=error.message,
            )
        )
        if self._telemetry is not None:
            self._telemetry.failed(request.document_id, request.sequence, error.error_code)

    def _handle_response(self, request: PredictionRequest, response: PredictionResponse) -> None:
        if not self._is_current(request):
            self._discard_stale(request)
            return
        state = self._store.ensure(request.document_id)
        snapshot = request.snapshot
        if response.window_only:
            candidate = request.context.merge_candidate(response.text)
        else:
            candidate = split_lines(response.text)
        hunks = compute_hunks(
            snapshot.lines,
            candidate,
            ignore_whitespace=self._settings.ignore_whitespace,
        )
        if not hunks:
            self._to_idle(state)
            self._log_outcome(EmptyDiff(details={"document_id": request.document_id}))
            self._bus.publish(
                PredictionDiscarded(document_id=request.document_id, sequence=request.sequence, reason="empty")
            )
            if self._telemetry is not None:
                self._telemetry.discarded(request.document_id, request.sequence, "empty")
            return

        state.active_hunks = hunks
        state.pending_snapshot = snapshot
        state.prediction_origin = snapshot
        state.inflight = None
        self._transition(state, RequestStatus.SHOWING_PREDICTION)
        self._bus.publish(
            PredictionShown(document_id=request.document_id, sequence=request.sequence, hunks=tuple(hunks))
        )
        if self._telemetry is not None:
            self._telemetry.shown(request.document_id, request.sequence, len(hunks))

    def _discard_stale(self, request: PredictionRequest) -> None:
        state = self._store.get(request.document_id)
        latest = state.request_seq if state is not None else request.sequence
        self._log_outcome(StaleResponse(sequence=request.sequence, latest_sequence=latest))
        self._bus.publish(
            PredictionDiscarded(document_id=request.document_id, sequence=request.sequence, reason="stale")
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_prefetch(self, document_id: str) -> bool:
        """Stop the edit timer and any in-flight request; a visible prediction stays."""

        cancelled = self._scheduler.cancel(document_id, TimerKind.EDIT)
        state = self._store.get(document_id)
        if state is None:
            return cancelled
        task = state.inflight
        if task is not None and not task.done():
            task.cancel()
            cancelled = True
        if state.status in (RequestStatus.DEBOUNCING, RequestStatus.IN_FLIGHT):
            self._to_idle(state)
            cancelled = True
        elif state.status is RequestStatus.IDLE:
            state.inflight = None
        return cancelled

    def cancel(self, document_id: str) -> bool:
        """Cancel all pending work and hide any prediction. Idempotent."""

        cancelled = self.cancel_prefetch(document_id)
        cancelled = self._scheduler.cancel(document_id, TimerKind.IDLE) or cancelled
        state = self._store.get(document_id)
        if state is not None and state.status is RequestStatus.SHOWING_PREDICTION:
            self._clear_prediction(state, "cancelled")
            cancelled = True
        return cancelled

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------
    def has_prediction(self, document_id: str) -> bool:
        state = self._store.get(document_id)
        return bool(state and state.has_prediction)

    def accept(self, document_id: str) -> bool:
        state = self._store.get(document_id)
        if state is None or not state.has_prediction:
            self._invalid("accept", state, document_id)
            return False
        if self._drifted(state):
            self._clear_prediction(state, "stale")
            return False
        origin = state.prediction_origin
        if not self._apply(state, list(state.active_hunks)):
            return False
        self._finish_accept(state, origin)
        return True

    def accept_line(self, document_id: str) -> bool:
        """Apply only the first hunk; the rest stay visible, shifted to the new layout."""

        state = self._store.get(document_id)
        if state is None or not state.has_prediction:
            self._invalid("accept_line", state, document_id)
            return False
        if self._drifted(state):
            self._clear_prediction(state, "stale")
            return False
        origin = state.prediction_origin
        first, *rest = state.active_hunks
        if not self._apply(state, [first]):
            return False
        if not rest:
            self._finish_accept(state, origin)
            return True
        state.active_hunks = [hunk.shifted(first.line_delta) for hunk in rest]
        state.pending_snapshot = self._capture(document_id)
        LOGGER.debug("Accepted first hunk for %s; %d remaining", document_id, len(state.active_hunks))
        self._bus.publish(
            PredictionShown(
                document_id=document_id,
                sequence=state.request_seq,
                hunks=tuple(state.active_hunks),
            )
        )
        return True

    def reject(self, document_id: str) -> bool:
        state = self._store.get(document_id)
        if state is None or not state.has_prediction:
            self._invalid("reject", state, document_id)
            return False
        snapshot = state.pending_snapshot
        if snapshot is not None:
            try:
                proposed = patch_lines(snapshot.lines, state.active_hunks)
            except ValueError:
                LOGGER.debug("Rejected prediction for %s no longer applies to its snapshot", document_id)
            else:
                diff = format_unified_diff(
                    snapshot.text,
                    join_lines(proposed),
                    filename=self._filepath(document_id),
                )
                if diff:
                    self._record_history(document_id, "rejected", diff)
        self._clear_prediction(state, "rejected")
        if self._telemetry is not None:
            self._telemetry.rejected(document_id)
        return True

    def clear(self, document_id: str) -> bool:
        state = self._store.get(document_id)
        if state is None or not state.has_prediction:
            self._invalid("clear", state, document_id)
            return False
        self._clear_prediction(state, "cleared")
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def status(self, document_id: str | None = None) -> EngineStatus:
        state = self._store.get(document_id) if document_id is not None else None
        if state is None:
            return EngineStatus(
                initialized=self._initialized,
                tracked_documents=len(self._store),
                document_id=document_id,
                status=RequestStatus.IDLE.value if document_id is not None else None,
            )
        return EngineStatus(
            initialized=self._initialized,
            tracked_documents=len(self._store),
            document_id=document_id,
            status=state.status.value,
            has_prediction=state.has_prediction,
            has_baseline=state.baseline is not None,
            in_flight=state.is_in_flight,
            has_pending_snapshot=state.pending_snapshot is not None,
            history_count=len(state.history),
            request_seq=state.request_seq,
            hunk_count=len(state.active_hunks),
        )

    def active_hunks(self, document_id: str) -> tuple[Hunk, ...]:
        state = self._store.get(document_id)
        return tuple(state.active_hunks) if state is not None else ()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _active(self, operation: str) -> bool:
        if not self._initialized:
            LOGGER.debug("Ignoring %s: engine not initialized", operation)
        return self._initialized

    def _capture(self, document_id: str) -> Snapshot:
        return Snapshot(
            lines=tuple(self._host.get_lines(document_id)),
            version=self._host.get_version(document_id),
            cursor=self._host.get_cursor(document_id),
        )

    def _drifted(self, state: DocumentState) -> bool:
        snapshot = state.pending_snapshot
        if snapshot is None:
            return True
        return self._host.get_version(state.document_id) != snapshot.version

    def _apply(self, state: DocumentState, hunks: Sequence[Hunk]) -> bool:
        """Write ``hunks`` to the host as one ``set_lines`` call covering their span."""

        document_id = state.document_id
        first, last = hunks[0], hunks[-1]
        start = first.start_line - 1
        end = max(start, last.start_line - 1 + len(last.old_lines))
        try:
            segment = self._host.get_lines(document_id)[start:end]
            replacement = patch_lines(segment, [hunk.shifted(-start) for hunk in hunks])
            state.suppress_next_trigger = True
            self._host.set_lines(document_id, start, end, replacement)
        except (IndexError, KeyError, ValueError) as exc:
            state.suppress_next_trigger = False
            LOGGER.warning("Could not apply prediction to %s: %s", document_id, exc)
            self._clear_prediction(state, "stale")
            return False
        return True

    def _finish_accept(self, state: DocumentState, origin: Snapshot | None) -> None:
        document_id = state.document_id
        hunk_count = len(state.active_hunks)
        if origin is not None:
            diff = format_unified_diff(
                origin.text,
                join_lines(self._host.get_lines(document_id)),
                filename=self._filepath(document_id),
            )
            if diff:
                self._record_history(document_id, "accepted", diff)
        self._clear_prediction(state, "accepted")
        if self._telemetry is not None:
            self._telemetry.accepted(document_id, hunk_count)

    def _clear_prediction(self, state: DocumentState, reason: ClearReason) -> None:
        self._to_idle(state)
        self._bus.publish(PredictionCleared(document_id=state.document_id, reason=reason))

    def _to_idle(self, state: DocumentState) -> None:
        state.reset_prediction()
        self._transition(state, RequestStatus.IDLE)

    def _transition(self, state: DocumentState, status: RequestStatus) -> None:
        if state.status is status:
            return
        LOGGER.debug("%s: %s -> %s", state.document_id, state.status.value, status.value)
        state.status = status

    def _record_history(self, document_id: str, kind: HistoryKind, diff: str) -> None:
        self._store.append_history(
            document_id,
            HistoryEntry(kind=kind, filepath=self._filepath(document_id), diff=diff),
        )

    def _filepath(self, document_id: str) -> str:
        try:
            return resolve_path(self._host.describe(document_id))
        except KeyError:
            return ""

    def _invalid(self, operation: str, state: DocumentState | None, document_id: str | None = None) -> None:
        error = InvalidStateTransition(
            operation=operation,
            state=state.status.value if state is not None else RequestStatus.IDLE.value,
            details={"document_id": document_id or (state.document_id if state else None)},
        )
        self._log_outcome(error)

    def _log_outcome(self, error: NextEditError) -> None:
        LOGGER.debug("%s (%s)", error, error.severity)
