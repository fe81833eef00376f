"""Raw completion backend for local llama.cpp and ollama servers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.errors import ErrorCode, TransportError, TransportTimeout
from .base import HealthStatus, PredictionResponse
from .prompts import REGION_END, SYSTEM_PROMPT, clean_completion, render_prompt

if TYPE_CHECKING:  # pragma: no cover
    from ..core.context import PredictionRequest
    from ..services.settings import LLMSettings

__all__ = ["HttpCompletionTransport", "PROVIDER_ENDPOINTS"]

LOGGER = logging.getLogger(__name__)

# provider -> (completion path, response field, health path)
PROVIDER_ENDPOINTS: Mapping[str, tuple[str, str, str]] = {
    "llamacpp": ("/completion", "content", "/health"),
    "ollama": ("/api/generate", "response", "/api/tags"),
}


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class HttpCompletionTransport:
    """POSTs a rendered prompt to a completion endpoint via :mod:`httpx`."""

    backend = "http"

    def __init__(self, settings: LLMSettings, *, client: httpx.AsyncClient | None = None) -> None:
        if settings.provider not in PROVIDER_ENDPOINTS:
            raise ValueError(f"Unsupported HTTP provider '{settings.provider}'")
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.url.rstrip("/"),
            timeout=settings.request_timeout,
            headers=dict(settings.default_headers),
        )

    @property
    def provider(self) -> str:
        return self._settings.provider

    async def predict(self, request: PredictionRequest) -> PredictionResponse:
        path, field_name, _ = PROVIDER_ENDPOINTS[self.provider]
        payload = self._build_payload(render_prompt(request.context))
        LOGGER.debug("POST %s for %s#%d", path, request.document_id, request.sequence)
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.post(path, json=payload)
                    if response.status_code == 429 or response.status_code >= 500:
                        raise _RetryableStatus(response)
        except _RetryableStatus as exc:
            raise TransportError(
                error_code=ErrorCode.TRANSPORT_HTTP_STATUS,
                message=f"Backend returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
                retryable=True,
            ) from exc
        except httpx.TimeoutException as exc:
            raise TransportTimeout(
                message=f"Backend timed out: {exc}",
                timeout_seconds=self._settings.request_timeout,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(message=f"Backend request failed: {exc}", retryable=True) from exc

        if response.is_error:
            raise TransportError(
                error_code=ErrorCode.TRANSPORT_HTTP_STATUS,
                message=f"Backend returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(
                error_code=ErrorCode.TRANSPORT_BAD_PAYLOAD,
                message="Backend response is not JSON",
            ) from exc
        text = body.get(field_name) if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise TransportError(
                error_code=ErrorCode.TRANSPORT_BAD_PAYLOAD,
                message=f"Backend response has no '{field_name}' field",
                details={"keys": sorted(body) if isinstance(body, dict) else []},
            )
        return PredictionResponse(text=clean_completion(text), window_only=True, model=self._settings.model, raw=body)

    async def health_check(self) -> HealthStatus:
        _, _, path = PROVIDER_ENDPOINTS[self.provider]
        url = self._settings.url
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as exc:
            return HealthStatus(ok=False, backend=self.backend, url=url, detail=str(exc))
        if response.is_error:
            return HealthStatus(ok=False, backend=self.backend, url=url, detail=f"HTTP {response.status_code}")
        models: tuple[str, ...] = ()
        if self.provider == "ollama":
            try:
                body = response.json()
            except ValueError:
                body = {}
            models = tuple(str(entry.get("name")) for entry in body.get("models", []) if isinstance(entry, dict))
        return HealthStatus(ok=True, backend=self.backend, url=url, detail=f"{path} reachable", models=models)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _build_payload(self, prompt: str) -> Dict[str, Any]:
        settings = self._settings
        if self.provider == "ollama":
            return {
                "model": settings.model,
                "system": SYSTEM_PROMPT,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": settings.temperature,
                    "num_predict": settings.max_tokens,
                    "stop": [REGION_END],
                },
            }
        return {
            "prompt": f"{SYSTEM_PROMPT}\n\n{prompt}",
            "n_predict": settings.max_tokens,
            "temperature": settings.temperature,
            "stop": [REGION_END],
            "stream": False,
            "cache_prompt": True,
        }

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries + 1)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type((_RetryableStatus, httpx.TransportError)),
        )
