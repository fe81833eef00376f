"""Settings dataclasses, validation and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..core.errors import ConfigurationError

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "LLMSettings",
    "ContextSettings",
    "SelectionSettings",
    "NormalModeSettings",
    "UISettings",
    "DebugSettings",
    "BACKEND_PROVIDERS",
    "validate_settings",
    "apply_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".nextedit"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEY_FIELD = "api_key_ciphertext"
_ENV_OVERRIDES: Mapping[str, str] = {
    "NEXTEDIT_API_KEY": "llm.api_key",
    "NEXTEDIT_URL": "llm.url",
    "NEXTEDIT_MODEL": "llm.model",
    "NEXTEDIT_BACKEND": "llm.backend",
    "NEXTEDIT_PROVIDER": "llm.provider",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "NEXTEDIT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "NEXTEDIT_REQUEST_TIMEOUT": "llm.request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "NEXTEDIT_DEBOUNCE_MS": "debounce_ms",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

# backend -> providers it can talk to
BACKEND_PROVIDERS: Mapping[str, tuple[str, ...]] = {
    "openai": ("openai",),
    "http": ("llamacpp", "ollama"),
}


@dataclass(slots=True)
class LLMSettings:
    """Connection details for the prediction backend."""

    backend: str = "openai"
    provider: str = "openai"
    url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    temperature: float = 0.0
    max_tokens: int = 512
    request_timeout: float = 10.0
    max_retries: int = 1
    retry_min_seconds: float = 0.25
    retry_max_seconds: float = 2.0
    default_headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SelectionSettings:
    enabled: bool = True
    max_lines: int = 50


@dataclass(slots=True)
class ContextSettings:
    """What the context assembler is allowed to send."""

    enabled: bool = True
    lines_before: int = 20
    lines_after: int = 20
    history_items: int = 5
    selection: SelectionSettings = field(default_factory=SelectionSettings)


@dataclass(slots=True)
class NormalModeSettings:
    """Idle predictions outside an editing session."""

    enabled: bool = False


@dataclass(slots=True)
class UISettings:
    suppress_popups: bool = True


@dataclass(slots=True)
class DebugSettings:
    telemetry_enabled: bool = False
    telemetry_dir: str | None = None


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    mode: str = "next-edit"
    debounce_ms: int = 100
    idle_debounce_ms: int = 300
    in_flight_timeout_ms: int = 8_000
    history_max: int = 20
    ignore_whitespace: bool = False
    filetypes: list[str] = field(default_factory=list)
    disabled_filetypes: list[str] = field(default_factory=list)
    debug_logging: bool = False
    llm: LLMSettings = field(default_factory=LLMSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    normal_mode: NormalModeSettings = field(default_factory=NormalModeSettings)
    ui: UISettings = field(default_factory=UISettings)
    debug: DebugSettings = field(default_factory=DebugSettings)

    def is_filetype_enabled(self, filetype: str) -> bool:
        normalized = (filetype or "").strip().lower()
        disabled = {entry.strip().lower() for entry in self.disabled_filetypes}
        if normalized in disabled:
            return False
        if not self.filetypes:
            return True
        return normalized in {entry.strip().lower() for entry in self.filetypes}


def validate_settings(settings: Settings) -> Settings:
    """Raise :class:`ConfigurationError` when ``settings`` cannot drive the engine."""

    for name in ("debounce_ms", "idle_debounce_ms", "in_flight_timeout_ms"):
        if getattr(settings, name) < 0:
            raise ConfigurationError(message=f"{name} must be >= 0", field_name=name)
    if settings.history_max < 1:
        raise ConfigurationError(message="history_max must be >= 1", field_name="history_max")

    llm = settings.llm
    providers = BACKEND_PROVIDERS.get(llm.backend)
    if providers is None:
        raise ConfigurationError(
            message=f"Unknown backend '{llm.backend}'",
            field_name="llm.backend",
            details={"choices": sorted(BACKEND_PROVIDERS)},
        )
    if llm.provider not in providers:
        raise ConfigurationError(
            message=f"Provider '{llm.provider}' is not supported by backend '{llm.backend}'",
            field_name="llm.provider",
            details={"choices": list(providers)},
        )
    if not (llm.url or "").strip():
        raise ConfigurationError(message="llm.url is required", field_name="llm.url")
    if not (llm.model or "").strip():
        raise ConfigurationError(message="llm.model is required", field_name="llm.model")
    if not 0.0 <= float(llm.temperature) <= 2.0:
        raise ConfigurationError(message="llm.temperature must be within [0, 2]", field_name="llm.temperature")
    if llm.max_tokens < 1:
        raise ConfigurationError(message="llm.max_tokens must be >= 1", field_name="llm.max_tokens")
    if llm.request_timeout <= 0:
        raise ConfigurationError(message="llm.request_timeout must be > 0", field_name="llm.request_timeout")
    if llm.max_retries < 0:
        raise ConfigurationError(message="llm.max_retries must be >= 0", field_name="llm.max_retries")

    context = settings.context
    for name in ("lines_before", "lines_after", "history_items"):
        if getattr(context, name) < 0:
            raise ConfigurationError(message=f"context.{name} must be >= 0", field_name=f"context.{name}")
    if context.selection.max_lines < 1:
        raise ConfigurationError(
            message="context.selection.max_lines must be >= 1",
            field_name="context.selection.max_lines",
        )
    return settings


def apply_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str = "runtime") -> Settings:
    """Return a copy of ``settings`` with dotted-key ``overrides`` applied."""

    applied: list[str] = []
    for key, value in overrides.items():
        if value is None:
            continue
        try:
            settings = _replace_path(settings, key.split("."), value)
        except KeyError:
            LOGGER.warning("Ignoring unknown %s settings override '%s'", source, key)
            continue
        applied.append(key)
    if applied:
        LOGGER.debug("Applied %s settings overrides: %s", source, sorted(applied))
    return settings


class SecretVault:
    """Encrypts and decrypts secrets with a Fernet key stored on disk."""

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.strategy}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.strategy or not payload:
            raise ValueError(f"Unsupported secret token prefix '{prefix}'")
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False
        if payload:
            plaintext_key, migrated = self._decrypt_api_key(payload)
            needs_migration = migrated
            try:
                settings = _build_dataclass(Settings, payload)
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if plaintext_key:
                settings = replace(settings, llm=replace(settings.llm, api_key=plaintext_key))

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data["llm"].pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, payload: Dict[str, Any]) -> tuple[str, bool]:
        ciphertext = payload.pop(_API_KEY_FIELD, None)
        llm_payload = payload.get("llm")
        legacy_plaintext = llm_payload.pop("api_key", None) if isinstance(llm_payload, dict) else None
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return str(legacy_plaintext), True
        return "", False

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, key in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[key] = value
        for env_name, key in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[key] = value.strip().lower() in _TRUE_VALUES
        for env_name, key in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[key] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, key in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[key] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = apply_overrides(settings, overrides, source="environment")
        return settings


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def _build_dataclass(cls: type, payload: Mapping[str, Any]) -> Any:
    """Instantiate ``cls`` from ``payload``, recursing into nested groups and dropping unknown keys."""

    kwargs: Dict[str, Any] = {}
    defaults = cls()
    for entry in fields(cls):
        if entry.name not in payload:
            continue
        value = payload[entry.name]
        current = getattr(defaults, entry.name)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                LOGGER.debug("Ignoring non-mapping payload for settings group %s", entry.name)
                continue
            value = _build_dataclass(type(current), value)
        kwargs[entry.name] = value
    return cls(**kwargs)


def _replace_path(target: Any, path: list[str], value: Any) -> Any:
    head, rest = path[0], path[1:]
    if not is_dataclass(target) or head not in {entry.name for entry in fields(target)}:
        raise KeyError(head)
    if rest:
        return replace(target, **{head: _replace_path(getattr(target, head), rest, value)})
    if is_dataclass(getattr(target, head)) and isinstance(value, Mapping):
        value = _build_dataclass(type(getattr(target, head)), value)
    return replace(target, **{head: value})
