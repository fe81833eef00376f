"""Tests covering the command line entry point."""

from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path

import pytest

from nextedit import __version__, app
from nextedit.core.errors import TransportError
from nextedit.services.settings import LLMSettings, Settings, SettingsStore
from nextedit.transport.base import HealthStatus

from tests.helpers import ScriptedTransport, wait_until


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, *, force=False: None)
    for name in ("NEXTEDIT_SETTINGS_PATH", "NEXTEDIT_DEBUG", "NEXTEDIT_MODEL", "NEXTEDIT_BACKEND", "NEXTEDIT_API_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings_path(tmp_path: Path) -> Path:
    return tmp_path / "settings.json"


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "demo.py"
    path.write_text("a\nb\nc\n", encoding="utf-8")
    return path


class TestCliOverrides:
    def test_dotted_keys_are_coerced_by_annotation(self) -> None:
        overrides = app._coerce_cli_overrides(
            [
                "debounce_ms=250",
                "ignore_whitespace=yes",
                "llm.temperature=0.5",
                "llm.model=local",
                "normal_mode={\"enabled\": true}",
                "filetypes=[\"python\"]",
                "debug.telemetry_dir=none",
            ]
        )

        assert overrides == {
            "debounce_ms": 250,
            "ignore_whitespace": True,
            "llm.temperature": 0.5,
            "llm.model": "local",
            "normal_mode": {"enabled": True},
            "filetypes": ["python"],
            "debug.telemetry_dir": None,
        }

    @pytest.mark.parametrize(
        "entry",
        ["debounce_ms", "=1", "nope=1", "llm.nope=1", "debounce_ms.x=1", "debounce_ms=soon", "ignore_whitespace=maybe"],
    )
    def test_invalid_overrides(self, entry: str) -> None:
        with pytest.raises(ValueError):
            app._coerce_cli_overrides([entry])

    def test_main_rejects_bad_override(self, settings_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = app.main(["--settings-path", str(settings_path), "--set", "bogus=1", "--dump-settings"])

        assert code == 2
        assert "Invalid --set override" in capsys.readouterr().err


class TestDumpSettings:
    def test_dump_redacts_secrets_and_reports_overrides(
        self, settings_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        store = SettingsStore(settings_path)
        store.save(Settings(llm=LLMSettings(api_key="sk-secret-value")))

        code = app.main(
            ["--settings-path", str(settings_path), "--set", "llm.model=local", "--dump-settings"]
        )

        assert code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["settings"]["llm"]["model"] == "local"
        assert payload["settings"]["llm"]["api_key"] == "sk***********ue"
        assert payload["meta"]["cli_overrides"] == ["llm.model"]
        assert payload["meta"]["path"] == str(settings_path)
        assert payload["meta"]["secret_backend"] == "fernet"

    def test_settings_path_from_environment(
        self, settings_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("NEXTEDIT_SETTINGS_PATH", str(settings_path))

        assert app.main(["--dump-settings"]) == 0

        assert json.loads(capsys.readouterr().out)["meta"]["path"] == str(settings_path)


class TestMain:
    def test_version_flag(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            app.main(["--version"])

        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_nothing_to_do(self, settings_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert app.main(["--settings-path", str(settings_path)]) == 2
        assert "Nothing to do" in capsys.readouterr().err

    def test_invalid_configuration_exits_2(self, settings_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = app.main(["--settings-path", str(settings_path), "--set", "llm.backend=grpc", "--health"])

        assert code == 2
        assert "Invalid configuration" in capsys.readouterr().err

    @pytest.mark.parametrize(("ok", "expected"), [(True, 0), (False, 1)])
    def test_health(
        self,
        settings_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
        ok: bool,
        expected: int,
    ) -> None:
        transport = ScriptedTransport()
        transport.health = HealthStatus(ok=ok, backend="scripted", url="memory://", detail="probe")
        monkeypatch.setattr(app, "create_transport", lambda settings: transport)

        code = app.main(["--settings-path", str(settings_path), "--health"])

        assert code == expected
        assert json.loads(capsys.readouterr().out)["ok"] is ok
        assert transport.closed

    def test_load_settings_survives_unreadable_store(self, tmp_path: Path) -> None:
        class _BrokenStore(SettingsStore):
            def load(self, *, overrides=None):
                raise OSError("disk on fire")

        settings = app.load_settings(store=_BrokenStore(tmp_path / "settings.json"))

        assert settings == Settings()


class TestPredict:
    @pytest.mark.asyncio
    async def test_prints_unified_diff(self, source_file: Path) -> None:
        transport = ScriptedTransport()
        stream = io.StringIO()

        task = asyncio.create_task(
            app._run_predict(
                Settings(),
                source_file,
                line=2,
                stream=stream,
                transport_factory=lambda settings: transport,
            )
        )
        await wait_until(lambda: len(transport.calls) == 1)
        request = transport.calls[0].request
        assert request.context.cursor == (2, 0)
        transport.respond(0, "a\nX\nc\n")

        assert await task == 0
        output = stream.getvalue()
        assert "--- a/demo.py" in output
        assert "-b" in output.splitlines()
        assert "+X" in output.splitlines()
        assert transport.closed
        assert source_file.read_text(encoding="utf-8") == "a\nb\nc\n"

    @pytest.mark.asyncio
    async def test_failure_returns_1(self, source_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        transport = ScriptedTransport()

        task = asyncio.create_task(
            app._run_predict(Settings(), source_file, stream=io.StringIO(), transport_factory=lambda settings: transport)
        )
        await wait_until(lambda: len(transport.calls) == 1)
        transport.fail(0, TransportError(message="offline"))

        assert await task == 1
        assert "offline" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_empty_prediction_returns_1(self, source_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        transport = ScriptedTransport()
        stream = io.StringIO()

        task = asyncio.create_task(
            app._run_predict(
                Settings(),
                source_file,
                line=2,
                stream=stream,
                transport_factory=lambda settings: transport,
            )
        )
        await wait_until(lambda: len(transport.calls) == 1)
        transport.respond(0, "a\nb\nc\n")

        assert await task == 1
        assert stream.getvalue() == ""
        assert "no changes" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path) -> None:
        assert await app._run_predict(Settings(), tmp_path / "missing.py") == 1

    @pytest.mark.asyncio
    async def test_disabled_filetype(self, source_file: Path) -> None:
        transport = ScriptedTransport()

        code = await app._run_predict(
            Settings(filetypes=["lua"]),
            source_file,
            transport_factory=lambda settings: transport,
        )

        assert code == 1
        assert transport.calls == []
        assert transport.closed
