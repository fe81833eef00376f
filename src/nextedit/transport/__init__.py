"""Prediction backends and the factory that picks one from settings."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..core.errors import ConfigurationError
from .base import HealthStatus, PredictionResponse, TransportClient
from .http_backend import HttpCompletionTransport
from .openai_backend import OpenAITransport

if TYPE_CHECKING:  # pragma: no cover
    from ..services.settings import Settings

__all__ = [
    "HealthStatus",
    "HttpCompletionTransport",
    "OpenAITransport",
    "PredictionResponse",
    "TransportClient",
    "create_transport",
]


def create_transport(settings: Settings) -> TransportClient:
    """Build the transport selected by ``settings.llm.backend``."""

    llm = settings.llm
    if llm.backend == "openai":
        return OpenAITransport(llm, debug_logging=settings.debug_logging)
    if llm.backend == "http":
        try:
            return HttpCompletionTransport(llm)
        except ValueError as exc:
            raise ConfigurationError(message=str(exc), field_name="llm.provider") from exc
    raise ConfigurationError(message=f"Unknown backend '{llm.backend}'", field_name="llm.backend")
