"""Host-facing facade wiring settings, transport, engine and render hooks together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..core.engine import PredictionEngine
from ..core.errors import ConfigurationError
from ..core.events import EventBus, PredictionCleared, PredictionShown
from ..core.scheduler import TimerKind
from ..core.state import SelectionRegion
from ..editor.workspace import DocumentHost, resolve_path
from ..services.settings import Settings, validate_settings
from ..transport import create_transport
from ..transport.base import HealthStatus, TransportClient
from ..utils.telemetry import TelemetryClient
from .intercepts import KeyBindings, TransientIntercept
from .render import Renderer, RenderNotifier

__all__ = ["ControllerStatus", "PredictionController"]

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[Settings], TransportClient]


@dataclass(frozen=True, slots=True)
class ControllerStatus:
    """Diagnostics exposed to host status commands."""

    initialized: bool
    enabled: bool
    mode: str = ""
    backend: str = ""
    provider: str = ""
    url: str = ""
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    document_id: Optional[str] = None
    status: Optional[str] = None
    has_prediction: bool = False
    tracked_documents: int = 0
    history_count: int = 0
    has_baseline: bool = False
    in_flight: bool = False
    has_pending_snapshot: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "enabled": self.enabled,
            "mode": self.mode,
            "backend": self.backend,
            "provider": self.provider,
            "url": self.url,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "document_id": self.document_id,
            "status": self.status,
            "has_prediction": self.has_prediction,
            "tracked_documents": self.tracked_documents,
            "history_count": self.history_count,
            "has_baseline": self.has_baseline,
            "in_flight": self.in_flight,
            "has_pending_snapshot": self.has_pending_snapshot,
        }


class PredictionController:
    """Explicit handle a host constructs once and routes editor notifications through.

    Change and idle notifications are gated the way editor integrations
    expect: only regular, writable buffers of enabled filetypes trigger
    predictions, and nothing triggers while the controller is disabled.
    """

    def __init__(
        self,
        host: DocumentHost,
        *,
        renderer: Renderer | None = None,
        bindings: KeyBindings | None = None,
        transport_factory: TransportFactory = create_transport,
        bus: EventBus | None = None,
        telemetry: TelemetryClient | None = None,
        intercept_key: str = "<Esc>",
    ) -> None:
        self._host = host
        self._renderer = renderer
        self._bindings = bindings
        self._transport_factory = transport_factory
        self._bus = bus or EventBus()
        self._telemetry = telemetry
        self._intercept_key = intercept_key
        self._settings: Settings | None = None
        self._engine: PredictionEngine | None = None
        self._transport: TransportClient | None = None
        self._notifier: RenderNotifier | None = None
        self._intercept: TransientIntercept | None = None
        self._enabled = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def engine(self) -> PredictionEngine | None:
        return self._engine

    @property
    def settings(self) -> Settings | None:
        return self._settings

    @property
    def intercept(self) -> TransientIntercept | None:
        return self._intercept

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    @property
    def enabled(self) -> bool:
        return self._enabled and self._engine is not None

    def setup(self, settings: Settings | None = None) -> PredictionEngine:
        """Validate ``settings`` and build the engine.

        Raises:
            ConfigurationError: On invalid settings or when already set up.
        """

        if self._engine is not None:
            raise ConfigurationError(message="Controller is already set up; call reset() first")
        settings = validate_settings(settings or Settings())
        transport = self._transport_factory(settings)
        telemetry = self._telemetry or TelemetryClient.from_settings(settings)

        engine = PredictionEngine(self._host, transport, settings, bus=self._bus, telemetry=telemetry)
        engine.init()
        engine.apply_settings(settings)

        self._settings = settings
        self._transport = transport
        self._engine = engine
        if self._renderer is not None:
            self._notifier = RenderNotifier(self._bus, self._renderer)
        if self._bindings is not None:
            self._intercept = TransientIntercept(self._bindings, self._on_intercept, key=self._intercept_key)
        self._bus.subscribe(PredictionShown, self._on_prediction_shown)
        self._bus.subscribe(PredictionCleared, self._on_prediction_cleared)
        self._enabled = True
        LOGGER.info(
            "nextedit ready (backend=%s provider=%s model=%s)",
            settings.llm.backend,
            settings.llm.provider,
            settings.llm.model,
        )
        return engine

    def reconfigure(self, settings: Settings) -> None:
        """Apply engine-level settings in place; backend changes need ``reset()`` + ``setup()``."""

        engine = self._require_engine()
        settings = validate_settings(settings)
        engine.apply_settings(settings)
        self._settings = settings
        if not settings.normal_mode.enabled and self._intercept is not None:
            self._intercept.restore_all()

    async def reset(self) -> None:
        """Tear everything down so :meth:`setup` can run again."""

        engine, transport = self._engine, self._transport
        self._engine = None
        self._transport = None
        self._enabled = False
        # Visible predictions publish their clear while the renderer is still attached.
        if engine is not None:
            await engine.shutdown()
        if self._intercept is not None:
            self._intercept.restore_all()
        self._bus.unsubscribe(PredictionShown, self._on_prediction_shown)
        self._bus.unsubscribe(PredictionCleared, self._on_prediction_cleared)
        if self._notifier is not None:
            self._notifier.detach()
        self._notifier = None
        self._intercept = None
        self._settings = None
        if transport is not None:
            try:
                await transport.aclose()
            except Exception as exc:  # pragma: no cover
                LOGGER.debug("Transport shutdown failed: %s", exc)

    async def aclose(self) -> None:
        await self.reset()

    def enable(self) -> None:
        self._require_engine()
        self._enabled = True
        LOGGER.info("nextedit enabled")

    def disable(self) -> None:
        """Reject visible predictions and stop all pending work."""

        engine = self._require_engine()
        self._enabled = False
        if self._intercept is not None:
            self._intercept.restore_all()
        for document_id in engine.store.tracked_documents():
            engine.scheduler.cancel(document_id, TimerKind.IDLE)
            engine.cancel_prefetch(document_id)
            if engine.has_prediction(document_id):
                engine.reject(document_id)
        LOGGER.info("nextedit disabled")

    def toggle(self) -> bool:
        if self.enabled:
            self.disable()
        else:
            self.enable()
        return self.enabled

    # ------------------------------------------------------------------
    # Editor notifications
    # ------------------------------------------------------------------
    def enter_editing(self, document_id: str) -> None:
        if not self._ready(document_id):
            return
        self._engine.on_enter_editing(document_id)

    def text_changed(self, document_id: str) -> None:
        engine = self._engine
        if engine is None or not self._enabled:
            return
        if not self._eligible(document_id):
            engine.cancel_prefetch(document_id)
            return
        engine.on_document_changed(document_id)

    def cursor_moved(self, document_id: str) -> None:
        if not self._ready(document_id):
            return
        self._engine.on_cursor_moved(document_id)

    def leave_editing(self, document_id: str) -> None:
        if self._engine is None:
            return
        self._engine.on_leave_editing(document_id)

    def document_hidden(self, document_id: str) -> None:
        """The document lost focus: drop pending work and its prediction."""

        if self._engine is None:
            return
        self._engine.cancel(document_id)

    def document_closed(self, document_id: str) -> None:
        if self._intercept is not None:
            self._intercept.restore(document_id)
        if self._engine is None:
            return
        self._engine.on_document_closed(document_id)

    def capture_selection(self, document_id: str, start_line: int, end_line: int) -> bool:
        """Record lines ``start_line..end_line`` (1-based, inclusive) as selection context."""

        engine = self._engine
        if engine is None or start_line <= 0 or end_line <= 0:
            return False
        if start_line > end_line:
            start_line, end_line = end_line, start_line
        try:
            lines = self._host.get_lines(document_id)[start_line - 1 : end_line]
            filepath = resolve_path(self._host.describe(document_id))
        except KeyError:
            return False
        if not lines:
            return False
        end_line = start_line + len(lines) - 1
        region = SelectionRegion(
            filepath=filepath,
            start_line=start_line,
            end_line=end_line,
            lines=tuple(lines),
        )
        return engine.on_selection_captured(document_id, region)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------
    def has_prediction(self, document_id: str) -> bool:
        return self._engine is not None and self._engine.has_prediction(document_id)

    def accept(self, document_id: str) -> bool:
        return self._engine is not None and self._engine.accept(document_id)

    def accept_line(self, document_id: str) -> bool:
        return self._engine is not None and self._engine.accept_line(document_id)

    def reject(self, document_id: str) -> bool:
        return self._engine is not None and self._engine.reject(document_id)

    def clear(self, document_id: str) -> bool:
        return self._engine is not None and self._engine.clear(document_id)

    def cancel(self, document_id: str) -> bool:
        return self._engine is not None and self._engine.cancel(document_id)

    def trigger(self, document_id: str) -> bool:
        """Manual trigger: bypasses the debounce but still honours the filetype filter."""

        engine = self._engine
        if engine is None or self._settings is None:
            return False
        try:
            info = self._host.describe(document_id)
        except KeyError:
            return False
        if not self._settings.is_filetype_enabled(info.filetype):
            LOGGER.debug("Filetype not enabled: %s", info.filetype)
            return False
        return engine.trigger_now(document_id)

    # ------------------------------------------------------------------
    # Host queries
    # ------------------------------------------------------------------
    def should_suppress_popups(self, document_id: str) -> bool:
        settings = self._settings
        if settings is None or not settings.ui.suppress_popups:
            return False
        return self.has_prediction(document_id)

    def should_yield(self, document_id: str, completion_menu_visible: bool) -> bool:
        """Whether the accept key belongs to the host's completion menu.

        A visible prediction always wins; otherwise an open completion menu
        gets the key.
        """

        if self.has_prediction(document_id):
            return False
        return bool(completion_menu_visible)

    def status(self, document_id: str | None = None) -> ControllerStatus:
        settings = self._settings
        engine = self._engine
        if settings is None or engine is None:
            return ControllerStatus(initialized=False, enabled=False, document_id=document_id)
        engine_status = engine.status(document_id)
        llm = settings.llm
        return ControllerStatus(
            initialized=engine_status.initialized,
            enabled=self.enabled,
            mode=settings.mode,
            backend=llm.backend,
            provider=llm.provider,
            url=llm.url,
            model=llm.model,
            temperature=llm.temperature,
            max_tokens=llm.max_tokens,
            document_id=document_id,
            status=engine_status.status,
            has_prediction=engine_status.has_prediction,
            tracked_documents=engine_status.tracked_documents,
            history_count=engine_status.history_count,
            has_baseline=engine_status.has_baseline,
            in_flight=engine_status.in_flight,
            has_pending_snapshot=engine_status.has_pending_snapshot,
        )

    async def health_check(self) -> HealthStatus:
        transport = self._transport
        settings = self._settings
        if transport is None or settings is None:
            return HealthStatus(ok=False, backend="", url="", detail="controller is not set up")
        status = await transport.health_check()
        if status.ok:
            LOGGER.debug("%s backend healthy: %s", settings.llm.backend, status.detail)
        else:
            LOGGER.warning("%s backend unhealthy: %s", settings.llm.backend, status.detail)
        return status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_engine(self) -> PredictionEngine:
        if self._engine is None:
            raise ConfigurationError(message="Controller is not set up; call setup() first")
        return self._engine

    def _ready(self, document_id: str) -> bool:
        return self._engine is not None and self._enabled and self._eligible(document_id)

    def _eligible(self, document_id: str) -> bool:
        settings = self._settings
        if settings is None:
            return False
        try:
            info = self._host.describe(document_id)
        except KeyError:
            return False
        if info.kind:
            return False
        if info.readonly or not info.modifiable:
            return False
        return settings.is_filetype_enabled(info.filetype)

    def _on_prediction_shown(self, event: PredictionShown) -> None:
        settings = self._settings
        if self._intercept is None or settings is None or not self._enabled:
            return
        if not settings.normal_mode.enabled:
            return
        self._intercept.install(event.document_id)

    def _on_prediction_cleared(self, event: PredictionCleared) -> None:
        if self._intercept is not None:
            self._intercept.restore(event.document_id)

    def _on_intercept(self, document_id: str) -> None:
        if self.has_prediction(document_id):
            self.reject(document_id)
