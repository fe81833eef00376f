"""Tests for the host-facing prediction controller."""

from __future__ import annotations

from dataclasses import replace

import pytest
import pytest_asyncio

from nextedit.core.errors import ConfigurationError
from nextedit.core.state import RequestStatus
from nextedit.host.controller import PredictionController
from nextedit.host.intercepts import KeyBindingTable
from nextedit.services.settings import LLMSettings, NormalModeSettings, UISettings

from tests.conftest import DOC
from tests.helpers import RecordingRenderer, settle, wait_until


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def bindings() -> KeyBindingTable:
    return KeyBindingTable()


@pytest.fixture
def make_controller(workspace, transport, renderer, bindings):
    def factory() -> PredictionController:
        return PredictionController(
            workspace,
            renderer=renderer,
            bindings=bindings,
            transport_factory=lambda settings: transport,
        )

    return factory


@pytest_asyncio.fixture
async def controller(make_controller, settings):
    instance = make_controller()
    instance.setup(settings)
    yield instance
    await instance.aclose()


async def _show(controller, transport, text: str = "a\nX\nc\n") -> None:
    index = len(transport.calls)
    assert controller.trigger(DOC)
    await wait_until(lambda: len(transport.calls) > index)
    transport.respond(index, text)
    await wait_until(lambda: controller.has_prediction(DOC))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_setup_builds_engine(self, make_controller, settings) -> None:
        controller = make_controller()

        engine = controller.setup(settings)

        assert controller.initialized
        assert controller.enabled
        assert controller.engine is engine
        assert engine.initialized
        await controller.aclose()

    @pytest.mark.asyncio
    async def test_setup_twice_raises(self, controller, settings) -> None:
        with pytest.raises(ConfigurationError):
            controller.setup(settings)

    def test_invalid_settings_raise_before_anything_is_built(self, make_controller, settings) -> None:
        controller = make_controller()
        broken = replace(settings, llm=LLMSettings(backend="carrier-pigeon"))

        with pytest.raises(ConfigurationError) as excinfo:
            controller.setup(broken)

        assert excinfo.value.field_name == "llm.backend"
        assert not controller.initialized

    def test_operations_before_setup_are_inert(self, make_controller) -> None:
        controller = make_controller()

        controller.text_changed(DOC)
        controller.enter_editing(DOC)
        controller.leave_editing(DOC)
        controller.document_hidden(DOC)

        assert not controller.trigger(DOC)
        assert not controller.accept(DOC)
        assert not controller.has_prediction(DOC)
        assert controller.status(DOC).to_dict()["initialized"] is False
        with pytest.raises(ConfigurationError):
            controller.enable()

    @pytest.mark.asyncio
    async def test_reset_allows_setup_again(self, controller, transport, settings) -> None:
        await _show(controller, transport)

        await controller.reset()

        assert transport.closed
        assert not controller.initialized
        controller.setup(settings)
        assert controller.enabled

    @pytest.mark.asyncio
    async def test_reset_clears_visible_prediction_from_renderer(
        self, controller, transport, renderer
    ) -> None:
        await _show(controller, transport)
        assert renderer.cleared == []

        await controller.reset()

        assert renderer.cleared == [DOC]
        assert not controller.has_prediction(DOC)

    @pytest.mark.asyncio
    async def test_health_check(self, make_controller, controller, transport) -> None:
        status = await controller.health_check()
        assert status.ok
        assert status.backend == "scripted"

        unset = await make_controller().health_check()
        assert not unset.ok


class TestGating:
    @pytest.mark.asyncio
    async def test_text_change_triggers_debounced_request(self, controller, transport) -> None:
        controller.text_changed(DOC)

        assert controller.status(DOC).status == RequestStatus.DEBOUNCING.value
        await wait_until(lambda: len(transport.calls) == 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options",
        [
            {"kind": "terminal"},
            {"readonly": True},
            {"modifiable": False},
            {"filetype": "markdown"},
        ],
    )
    async def test_ineligible_buffers_never_trigger(self, controller, workspace, transport, settings, options) -> None:
        controller.reconfigure(replace(settings, disabled_filetypes=["markdown"]))
        workspace.open("text", document_id="special", **{"filetype": "py", **options})

        controller.text_changed("special")
        controller.enter_editing("special")
        await settle()

        assert controller.status("special").status == RequestStatus.IDLE.value
        assert not controller.engine.scheduler.is_pending("special")

    @pytest.mark.asyncio
    async def test_disabled_controller_ignores_changes(self, controller, transport) -> None:
        controller.disable()

        controller.text_changed(DOC)

        assert not controller.engine.scheduler.is_pending(DOC)
        assert not controller.enabled

    @pytest.mark.asyncio
    async def test_disable_rejects_visible_prediction_and_cancels_work(
        self, controller, workspace, transport, renderer
    ) -> None:
        await _show(controller, transport)
        workspace.open("x\n", document_id="other", filetype="py")
        controller.text_changed("other")

        controller.disable()

        assert not controller.has_prediction(DOC)
        assert renderer.cleared == [DOC]
        assert not controller.engine.scheduler.is_pending("other")
        assert workspace.get_text(DOC) == "a\nb\nc\n"

    @pytest.mark.asyncio
    async def test_toggle(self, controller) -> None:
        assert controller.toggle() is False
        assert controller.toggle() is True

    @pytest.mark.asyncio
    async def test_manual_trigger_honours_filetype_filter(self, controller, transport, settings) -> None:
        controller.reconfigure(replace(settings, filetypes=["lua"]))

        assert controller.trigger(DOC) is False
        assert controller.trigger("missing") is False
        await settle()
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_document_hidden_cancels(self, controller, transport) -> None:
        await _show(controller, transport)

        controller.document_hidden(DOC)

        assert not controller.has_prediction(DOC)


class TestRenderingAndOperations:
    @pytest.mark.asyncio
    async def test_renderer_sees_show_and_clear(self, controller, workspace, transport, renderer) -> None:
        await _show(controller, transport)

        assert renderer.shown[0][0] == DOC
        assert renderer.shown[0][1][0].new_lines == ("X",)

        assert controller.accept(DOC)
        assert renderer.cleared == [DOC]
        assert workspace.get_text(DOC) == "a\nX\nc\n"

    @pytest.mark.asyncio
    async def test_user_operations_delegate(self, controller, transport) -> None:
        await _show(controller, transport)
        assert controller.accept_line(DOC)

        await _show(controller, transport, "a\nX\nY\n")
        assert controller.reject(DOC)

        await _show(controller, transport, "a\nX\nZ\n")
        assert controller.clear(DOC)

        await _show(controller, transport, "Q\nX\nc\n")
        assert controller.cancel(DOC)
        assert not controller.has_prediction(DOC)

    @pytest.mark.asyncio
    async def test_popup_suppression_follows_prediction(self, controller, transport, settings) -> None:
        assert not controller.should_suppress_popups(DOC)
        await _show(controller, transport)
        assert controller.should_suppress_popups(DOC)

        controller.reconfigure(replace(settings, ui=UISettings(suppress_popups=False)))
        assert not controller.should_suppress_popups(DOC)

    @pytest.mark.asyncio
    async def test_should_yield_only_without_prediction(self, controller, transport) -> None:
        assert controller.should_yield(DOC, completion_menu_visible=True)
        assert not controller.should_yield(DOC, completion_menu_visible=False)

        await _show(controller, transport)

        assert not controller.should_yield(DOC, completion_menu_visible=True)

    @pytest.mark.asyncio
    async def test_capture_selection(self, controller, transport) -> None:
        assert controller.capture_selection(DOC, 3, 2)
        assert not controller.capture_selection(DOC, 0, 2)
        assert not controller.capture_selection(DOC, 40, 50)
        assert not controller.capture_selection("missing", 1, 1)

        controller.trigger(DOC)
        await wait_until(lambda: len(transport.calls) == 1)

        selection = transport.calls[0].request.context.selection
        assert (selection.start_line, selection.end_line) == (2, 3)
        assert selection.lines == ("b", "c")
        assert selection.filepath == "src/demo.py"

    @pytest.mark.asyncio
    async def test_status_reports_backend(self, controller, transport) -> None:
        await _show(controller, transport)

        payload = controller.status(DOC).to_dict()

        assert payload["enabled"] is True
        assert payload["backend"] == "openai"
        assert payload["status"] == "showingPrediction"
        assert payload["has_prediction"] is True
        assert payload["tracked_documents"] == 1


class TestEscapeIntercept:
    @pytest.mark.asyncio
    async def test_not_installed_outside_normal_mode(self, controller, transport, bindings) -> None:
        await _show(controller, transport)

        assert not controller.intercept.is_installed(DOC)

    @pytest.mark.asyncio
    async def test_escape_rejects_and_restores_binding(self, controller, transport, bindings, settings) -> None:
        calls: list[str] = []

        def original() -> None:
            calls.append("esc")

        bindings.set(DOC, "<Esc>", original)
        controller.reconfigure(replace(settings, normal_mode=NormalModeSettings(enabled=True)))
        await _show(controller, transport)
        assert controller.intercept.is_installed(DOC)

        assert bindings.press(DOC, "<Esc>")

        assert calls == ["esc"]
        assert not controller.has_prediction(DOC)
        assert bindings.get(DOC, "<Esc>") is original
        assert [entry.kind for entry in controller.engine.store.history(DOC)] == ["rejected"]

    @pytest.mark.asyncio
    async def test_accept_restores_binding(self, controller, transport, bindings, settings) -> None:
        controller.reconfigure(replace(settings, normal_mode=NormalModeSettings(enabled=True)))
        await _show(controller, transport)

        controller.accept(DOC)

        assert not controller.intercept.is_installed(DOC)
        assert bindings.get(DOC, "<Esc>") is None

    @pytest.mark.asyncio
    async def test_document_closed_restores_binding(self, controller, transport, bindings, settings) -> None:
        controller.reconfigure(replace(settings, normal_mode=NormalModeSettings(enabled=True)))
        await _show(controller, transport)

        controller.document_closed(DOC)

        assert not controller.intercept.is_installed(DOC)
        assert DOC not in controller.engine.store
