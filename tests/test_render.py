"""Tests for the renderer notification bridge."""

from __future__ import annotations

from nextedit.core.diff import Hunk, HunkKind
from nextedit.core.events import EventBus, PredictionCleared, PredictionShown
from nextedit.host.render import RenderNotifier

from tests.helpers import RecordingRenderer

HUNK = Hunk(kind=HunkKind.REPLACE, start_line=2, old_lines=("b",), new_lines=("X",))


def test_forwards_show_and_clear() -> None:
    bus = EventBus()
    renderer = RecordingRenderer()
    notifier = RenderNotifier(bus, renderer)

    bus.publish(PredictionShown(document_id="doc", sequence=1, hunks=(HUNK,)))
    bus.publish(PredictionCleared(document_id="doc", reason="accepted"))

    assert notifier.attached
    assert renderer.shown == [("doc", (HUNK,))]
    assert renderer.cleared == ["doc"]


def test_detach_stops_forwarding() -> None:
    bus = EventBus()
    renderer = RecordingRenderer()
    notifier = RenderNotifier(bus, renderer)

    notifier.detach()
    notifier.detach()
    bus.publish(PredictionShown(document_id="doc", sequence=1, hunks=(HUNK,)))

    assert renderer.shown == []
    assert bus.handler_count() == 0

    notifier.attach()
    notifier.attach()
    assert bus.handler_count(PredictionShown) == 1
