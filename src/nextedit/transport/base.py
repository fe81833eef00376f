"""Transport boundary between the engine and prediction backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover
    from ..core.context import PredictionRequest

__all__ = ["HealthStatus", "PredictionResponse", "TransportClient"]


@dataclass(frozen=True, slots=True)
class PredictionResponse:
    """Candidate text returned by a backend.

    When ``window_only`` is true the text replaces the request's editable
    window; otherwise it is the full document.
    """

    text: str
    window_only: bool = True
    model: str | None = None
    raw: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class HealthStatus:
    ok: bool
    backend: str
    url: str
    detail: str = ""
    models: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "backend": self.backend,
            "url": self.url,
            "detail": self.detail,
            "models": list(self.models),
        }


@runtime_checkable
class TransportClient(Protocol):
    """Send a request and return a candidate, or raise :class:`TransportError`.

    Cancellation is cooperative: the engine cancels the task awaiting
    :meth:`predict` and implementations must let :class:`asyncio.CancelledError`
    propagate.
    """

    async def predict(self, request: PredictionRequest) -> PredictionResponse:  # pragma: no cover - protocol
        ...

    async def health_check(self) -> HealthStatus:  # pragma: no cover - protocol
        ...

    async def aclose(self) -> None:  # pragma: no cover - protocol
        ...
