"""Event bus used by the engine to notify renderers and observers.

The engine never draws anything itself. It publishes the events below and
hosts subscribe, either directly or through :class:`~nextedit.host.render.RenderNotifier`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, Literal, TypeVar
from weakref import WeakMethod, ref

from .diff import Hunk

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]

ClearReason = Literal["accepted", "rejected", "cleared", "cancelled", "stale", "closed"]
DiscardReason = Literal["stale", "empty"]


@dataclass(slots=True)
class Event:
    """Base class for all engine events."""

    pass


_QUIET_EVENT_TYPES: set[type] = set()


@dataclass(slots=True)
class PredictionRequested(Event):
    """Emitted when a request is handed to the transport.

    Attributes:
        document_id: Document the request belongs to.
        sequence: Trigger sequence number the request was issued for.
    """

    document_id: str
    sequence: int


_QUIET_EVENT_TYPES.add(PredictionRequested)


@dataclass(slots=True)
class PredictionShown(Event):
    """Emitted when a prediction becomes visible or its hunk set shrinks.

    Attributes:
        document_id: Document showing the prediction.
        sequence: Sequence number of the request that produced it.
        hunks: Remaining hunks, sorted by position.
    """

    document_id: str
    sequence: int
    hunks: tuple[Hunk, ...]


@dataclass(slots=True)
class PredictionCleared(Event):
    """Emitted when a visible prediction is consumed or hidden."""

    document_id: str
    reason: ClearReason


@dataclass(slots=True)
class PredictionFailed(Event):
    """Emitted when the transport failed; the document is back in ``idle``."""

    document_id: str
    sequence: int
    error_code: str
    message: str


@dataclass(slots=True)
class PredictionDiscarded(Event):
    """Emitted when a response was dropped without showing anything."""

    document_id: str
    sequence: int
    reason: DiscardReason


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Example::

        bus = EventBus()

        def on_shown(event: PredictionShown) -> None:
            print(event.document_id, len(event.hunks))

        bus.subscribe(PredictionShown, on_shown)

    Thread Safety:
        Not thread-safe. All calls happen on the engine's event loop.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``.

        Bound methods are held weakly so subscribers can be garbage
        collected without unsubscribing. Subscribing twice means two calls.
        """
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed handler %s to event type %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Call every handler for ``type(event)`` in registration order.

        A handler that raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            if i < len(handlers):
                handlers.pop(i)

    def clear(self) -> None:
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Any) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "ClearReason",
    "DiscardReason",
    "PredictionRequested",
    "PredictionShown",
    "PredictionCleared",
    "PredictionFailed",
    "PredictionDiscarded",
]
