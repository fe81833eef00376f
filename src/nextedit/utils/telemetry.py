"""Opt-in JSONL telemetry for the prediction lifecycle.

Each document gets a latency clock that starts when a request is issued.
The clock is read once by whichever outcome arrives first (shown, failed
or discarded). Events are buffered and appended to ``telemetry.jsonl``
under the configured directory.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

__all__ = [
    "PREDICTION_EVENTS",
    "PredictionTelemetryEvent",
    "TelemetryClient",
    "telemetry_enabled",
]

REQUESTED = "prediction.requested"
SHOWN = "prediction.shown"
FAILED = "prediction.failed"
DISCARDED = "prediction.discarded"
ACCEPTED = "prediction.accepted"
REJECTED = "prediction.rejected"
PREDICTION_EVENTS = frozenset({REQUESTED, SHOWN, FAILED, DISCARDED, ACCEPTED, REJECTED})

_TELEMETRY_FILE = "telemetry.jsonl"
_ENABLED_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True, frozen=True)
class PredictionTelemetryEvent:
    """One lifecycle record; unset fields are left out of the JSON line."""

    name: str
    document_id: str
    recorded_at: str
    sequence: Optional[int] = None
    hunks: Optional[int] = None
    latency_ms: Optional[float] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None

    def to_json(self, session_id: str) -> str:
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        payload["session_id"] = session_id
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)


@dataclass(slots=True)
class TelemetryClient:
    """Records prediction outcomes for one engine session."""

    enabled: bool = False
    storage_dir: Path | str | None = None
    max_buffer: int = 32
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    _buffer: list[PredictionTelemetryEvent] = field(default_factory=list, init=False, repr=False)
    _started: Dict[str, float] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "TelemetryClient | None":
        """Build an enabled client when telemetry is switched on, else ``None``."""

        if not telemetry_enabled(settings):
            return None
        return cls(enabled=True, storage_dir=settings.debug.telemetry_dir)

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------
    def requested(self, document_id: str, sequence: int) -> None:
        if not self.enabled:
            return
        self._started[document_id] = time.monotonic()
        self._record(REQUESTED, document_id, sequence=sequence)

    def shown(self, document_id: str, sequence: int, hunks: int) -> None:
        self._record(SHOWN, document_id, sequence=sequence, hunks=hunks, latency_ms=self._elapsed(document_id))

    def failed(self, document_id: str, sequence: int, error_code: str) -> None:
        self._record(
            FAILED,
            document_id,
            sequence=sequence,
            error_code=error_code,
            latency_ms=self._elapsed(document_id),
        )

    def discarded(self, document_id: str, sequence: int, reason: str) -> None:
        self._record(DISCARDED, document_id, sequence=sequence, reason=reason, latency_ms=self._elapsed(document_id))

    def accepted(self, document_id: str, hunks: int) -> None:
        self._record(ACCEPTED, document_id, hunks=hunks)

    def rejected(self, document_id: str) -> None:
        self._record(REJECTED, document_id)

    # ------------------------------------------------------------------
    # Buffer management
    # ------------------------------------------------------------------
    def flush(self) -> Path | None:
        if not self.enabled or not self._buffer:
            return None
        target = self.log_path
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.writelines(event.to_json(self.session_id) + "\n" for event in self._buffer)
        self._buffer.clear()
        return target

    def pending_events(self) -> list[PredictionTelemetryEvent]:
        return list(self._buffer)

    @property
    def log_path(self) -> Path:
        directory = self.storage_dir or os.environ.get("NEXTEDIT_TELEMETRY_DIR") or Path.home() / ".nextedit" / "telemetry"
        return Path(directory).expanduser() / _TELEMETRY_FILE

    def _elapsed(self, document_id: str) -> float | None:
        started = self._started.pop(document_id, None)
        if started is None:
            return None
        return round((time.monotonic() - started) * 1000.0, 1)

    def _record(self, name: str, document_id: str, **fields: Any) -> None:
        if not self.enabled:
            return
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        self._buffer.append(PredictionTelemetryEvent(name=name, document_id=document_id, recorded_at=stamp, **fields))
        if len(self._buffer) >= self.max_buffer:
            self.flush()


def telemetry_enabled(settings: Any | None = None) -> bool:
    """``NEXTEDIT_TELEMETRY`` wins over ``settings.debug.telemetry_enabled``."""

    env_value = os.environ.get("NEXTEDIT_TELEMETRY")
    if env_value is not None:
        return env_value.strip().lower() in _ENABLED_VALUES
    debug = getattr(settings, "debug", settings)
    return bool(getattr(debug, "telemetry_enabled", False))
