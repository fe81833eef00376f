"""Command line entry point for inspecting settings and exercising a backend."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from . import __version__
from .core.diff import Hunk, apply_hunks, format_unified_diff
from .core.errors import ConfigurationError
from .core.events import PredictionDiscarded, PredictionFailed, PredictionShown
from .editor.workspace import InMemoryWorkspace
from .host.controller import PredictionController, TransportFactory
from .services.settings import Settings, SettingsStore, redact_secret, validate_settings
from .transport import create_transport
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    log_path = logging_utils.setup_logging(debug, force=force)
    _LOGGER.debug("Logging to %s (debug=%s)", log_path, debug)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``nextedit`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("NEXTEDIT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("NEXTEDIT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    try:
        validate_settings(settings)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.health:
        return asyncio.run(_run_health(settings))
    if args.predict:
        return asyncio.run(_run_predict(settings, Path(args.predict), line=args.line))

    print("Nothing to do; pass --dump-settings, --health or --predict PATH.", file=sys.stderr)
    return 2


async def _run_health(settings: Settings, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    transport = create_transport(settings)
    try:
        status = await transport.health_check()
    finally:
        await transport.aclose()
    json.dump(status.to_dict(), destination, indent=2)
    destination.write("\n")
    return 0 if status.ok else 1


async def _run_predict(
    settings: Settings,
    path: Path,
    *,
    line: int | None = None,
    stream: TextIO | None = None,
    transport_factory: TransportFactory | None = None,
) -> int:
    """Load ``path``, request one prediction around ``line`` and print it as a diff."""

    destination = stream or sys.stdout
    workspace = InMemoryWorkspace()
    try:
        document = workspace.open_file(path)
    except OSError as exc:
        print(f"Cannot read {path}: {exc}", file=sys.stderr)
        return 1
    document_id = document.document_id
    if line is not None:
        workspace.set_cursor(document_id, line)

    active = PredictionController(workspace, transport_factory=transport_factory or create_transport)
    engine = active.setup(settings)
    loop = asyncio.get_running_loop()
    outcome: asyncio.Future[tuple[Hunk, ...] | None] = loop.create_future()

    def _resolve(value: tuple[Hunk, ...] | None) -> None:
        if not outcome.done():
            outcome.set_result(value)

    def _on_shown(event: PredictionShown) -> None:
        _resolve(event.hunks)

    def _on_failed(event: PredictionFailed) -> None:
        print(f"Prediction failed: [{event.error_code}] {event.message}", file=sys.stderr)
        _resolve(None)

    def _on_discarded(event: PredictionDiscarded) -> None:
        if event.reason == "empty":
            print("Backend proposed no changes.", file=sys.stderr)
        _resolve(None)

    engine.bus.subscribe(PredictionShown, _on_shown)
    engine.bus.subscribe(PredictionFailed, _on_failed)
    engine.bus.subscribe(PredictionDiscarded, _on_discarded)
    try:
        if not active.trigger(document_id):
            print(f"Predictions are disabled for {path}", file=sys.stderr)
            return 1
        hunks = await outcome
        if not hunks:
            return 1
        original = workspace.get_text(document_id)
        updated = apply_hunks(original, hunks)
        destination.write(format_unified_diff(original, updated, filename=path.name))
        destination.write("\n")
        return 0
    finally:
        await active.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nextedit",
        description="Inspect nextedit configuration or request a single next-edit prediction.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.nextedit/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting for this run; nested groups use dotted keys (repeatable).",
    )
    parser.add_argument(
        "--health",
        action="store_true",
        help="Ping the configured backend and exit 0 when it is reachable.",
    )
    parser.add_argument(
        "--predict",
        metavar="PATH",
        help="Request one prediction for PATH and print it as a unified diff.",
    )
    parser.add_argument(
        "--line",
        type=int,
        default=None,
        help="Cursor line (1-based) used with --predict.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        annotation = _resolve_field_annotation(key)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _resolve_field_annotation(key: str) -> Any:
    target: Any = Settings
    annotation: Any = Settings
    for part in key.split("."):
        if not (isinstance(target, type) and is_dataclass(target)):
            raise ValueError(f"Unknown setting '{key}'.")
        names = {entry.name for entry in fields(target)}
        if part not in names:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = get_type_hints(target)[part]
        target = _resolve_annotation(annotation)
    return annotation


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if type(None) in get_args(annotation) and normalized.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if is_dataclass(target):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Group overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Group overrides must be valid JSON objects")
        return payload
    if target is list:
        try:
            return json.loads(normalized or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["llm"]["api_key"] = redact_secret(settings.llm.api_key)
    log_path = logging_utils.get_log_path()
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
        "log_path": str(log_path) if log_path else None,
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("NEXTEDIT_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
