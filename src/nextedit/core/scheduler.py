"""Per-document debounce timers running on the engine's event loop."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict

__all__ = ["DebounceScheduler", "TimerKind"]

LOGGER = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


class TimerKind(str, Enum):
    """Independent timer classes kept per document."""

    EDIT = "edit"
    IDLE = "idle"


@dataclass(slots=True)
class _Timer:
    token: int
    handle: asyncio.TimerHandle
    callback: TimerCallback


class DebounceScheduler:
    """Coalesces bursts of triggers into one callback after a quiet period.

    One timer exists per ``(document_id, kind)``; scheduling again replaces
    the pending timer (last write wins). Expiry never runs the callback
    inside the timer frame: it is queued with ``call_soon`` and re-checked
    on dispatch, so a timer cancelled in between never fires.
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._timers: Dict[tuple[str, TimerKind], _Timer] = {}
        self._tokens = itertools.count(1)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(
        self,
        document_id: str,
        delay_ms: float,
        callback: TimerCallback,
        *,
        kind: TimerKind = TimerKind.EDIT,
    ) -> None:
        key = (document_id, kind)
        self._disarm(key)
        token = next(self._tokens)
        delay = max(0.0, float(delay_ms)) / 1000.0
        handle = self.loop.call_later(delay, self._expire, key, token)
        self._timers[key] = _Timer(token=token, handle=handle, callback=callback)
        LOGGER.debug("Debounce armed: document=%s kind=%s delay_ms=%s", document_id, kind.value, delay_ms)

    def cancel(self, document_id: str, kind: TimerKind | None = None) -> bool:
        """Disarm the timer(s) for ``document_id``; returns whether any was pending."""

        kinds = (kind,) if kind is not None else tuple(TimerKind)
        cancelled = False
        for entry in kinds:
            cancelled = self._disarm((document_id, entry)) or cancelled
        return cancelled

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self._disarm(key)

    def is_pending(self, document_id: str, kind: TimerKind = TimerKind.EDIT) -> bool:
        return (document_id, kind) in self._timers

    def pending_count(self) -> int:
        return len(self._timers)

    def _disarm(self, key: tuple[str, TimerKind]) -> bool:
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.handle.cancel()
        return True

    def _expire(self, key: tuple[str, TimerKind], token: int) -> None:
        self.loop.call_soon(self._dispatch, key, token)

    def _dispatch(self, key: tuple[str, TimerKind], token: int) -> None:
        timer = self._timers.get(key)
        if timer is None or timer.token != token:
            return
        del self._timers[key]
        document_id, kind = key
        LOGGER.debug("Debounce fired: document=%s kind=%s", document_id, kind.value)
        try:
            timer.callback()
        except Exception:
            LOGGER.exception("Debounce callback failed for %s (%s)", document_id, kind.value)
