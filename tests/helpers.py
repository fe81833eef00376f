"""Shared test helpers and stub classes.

Import from here instead of duplicating fakes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from nextedit.core.context import PredictionContext, PredictionRequest
from nextedit.core.diff import Hunk, split_lines
from nextedit.core.state import HistoryEntry, SelectionRegion, Snapshot
from nextedit.transport.base import HealthStatus, PredictionResponse


@dataclass
class ScriptedCall:
    request: PredictionRequest
    future: asyncio.Future = field(repr=False)
    cancelled: bool = False


class ScriptedTransport:
    """Transport whose ``predict`` calls block until the test resolves them.

    Example::

        transport.respond(0, "a\\nX\\nc\\n")
        transport.fail(1, TransportError(message="boom"))
    """

    backend = "scripted"

    def __init__(self) -> None:
        self.calls: list[ScriptedCall] = []
        self.health = HealthStatus(ok=True, backend=self.backend, url="memory://")
        self.closed = False

    async def predict(self, request: PredictionRequest) -> PredictionResponse:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        call = ScriptedCall(request=request, future=future)
        self.calls.append(call)
        try:
            return await future
        except asyncio.CancelledError:
            call.cancelled = True
            raise

    async def health_check(self) -> HealthStatus:
        return self.health

    async def aclose(self) -> None:
        self.closed = True

    def respond(self, index: int, text: str, *, window_only: bool = False) -> None:
        future = self.calls[index].future
        if not future.done():
            future.set_result(PredictionResponse(text=text, window_only=window_only))

    def fail(self, index: int, error: BaseException) -> None:
        future = self.calls[index].future
        if not future.done():
            future.set_exception(error)


class RecordingRenderer:
    """Renderer that records show/clear notifications."""

    def __init__(self) -> None:
        self.shown: list[tuple[str, tuple[Hunk, ...]]] = []
        self.cleared: list[str] = []

    def on_show(self, document_id: str, hunks: Sequence[Hunk]) -> None:
        self.shown.append((document_id, tuple(hunks)))

    def on_clear(self, document_id: str) -> None:
        self.cleared.append(document_id)


class EventRecorder:
    """Collects every event of the given types published on a bus."""

    def __init__(self, bus: Any, *event_types: type) -> None:
        self.events: list[Any] = []
        for event_type in event_types:
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds or fail after ``timeout`` seconds."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


async def settle(rounds: int = 5) -> None:
    """Let already-scheduled callbacks and tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


def make_request(
    text: str,
    *,
    document_id: str = "doc",
    cursor: tuple[int, int] = (1, 0),
    window: tuple[int, int] | None = None,
    sequence: int = 1,
    filepath: str = "src/demo.py",
    history: tuple[HistoryEntry, ...] = (),
    selection: SelectionRegion | None = None,
) -> PredictionRequest:
    """Build a request without going through the engine."""

    lines = tuple(split_lines(text))
    start, end = window if window is not None else (0, len(lines))
    snapshot = Snapshot(lines=lines, version=1, cursor=cursor)
    context = PredictionContext(
        document_id=document_id,
        filepath=filepath,
        filetype="py",
        cursor=cursor,
        lines=lines,
        window_start=start,
        window_end=end,
        history=history,
        selection=selection,
    )
    return PredictionRequest(
        document_id=document_id,
        sequence=sequence,
        snapshot_version=1,
        context=context,
        snapshot=snapshot,
    )
