"""Renderer boundary: hosts draw predictions, the engine only announces them."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from ..core.diff import Hunk
from ..core.events import EventBus, PredictionCleared, PredictionShown

__all__ = ["RenderNotifier", "Renderer"]

LOGGER = logging.getLogger(__name__)


class Renderer(Protocol):
    """What a host must implement to display predictions as virtual text."""

    def on_show(self, document_id: str, hunks: Sequence[Hunk]) -> None:  # pragma: no cover - protocol
        ...

    def on_clear(self, document_id: str) -> None:  # pragma: no cover - protocol
        ...


class RenderNotifier:
    """Forwards ``PredictionShown``/``PredictionCleared`` events to a :class:`Renderer`.

    The bus holds the notifier's handlers weakly, so the owner must keep the
    notifier alive for as long as rendering should happen.
    """

    def __init__(self, bus: EventBus, renderer: Renderer) -> None:
        self._bus = bus
        self._renderer = renderer
        self._attached = False
        self.attach()

    @property
    def renderer(self) -> Renderer:
        return self._renderer

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        if self._attached:
            return
        self._bus.subscribe(PredictionShown, self._on_shown)
        self._bus.subscribe(PredictionCleared, self._on_cleared)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self._bus.unsubscribe(PredictionShown, self._on_shown)
        self._bus.unsubscribe(PredictionCleared, self._on_cleared)
        self._attached = False

    def _on_shown(self, event: PredictionShown) -> None:
        LOGGER.debug("Render show: %s (%d hunks)", event.document_id, len(event.hunks))
        self._renderer.on_show(event.document_id, event.hunks)

    def _on_cleared(self, event: PredictionCleared) -> None:
        LOGGER.debug("Render clear: %s (%s)", event.document_id, event.reason)
        self._renderer.on_clear(event.document_id)
