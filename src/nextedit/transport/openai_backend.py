"""OpenAI-compatible chat completion backend."""

from __future__ import annotations

import inspect
import json
import logging
from typing import TYPE_CHECKING, Any, Dict

import httpx
from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.errors import ErrorCode, TransportError, TransportTimeout
from .base import HealthStatus, PredictionResponse
from .prompts import build_chat_messages, clean_completion

if TYPE_CHECKING:  # pragma: no cover
    from ..core.context import PredictionRequest
    from ..services.settings import LLMSettings

__all__ = ["OpenAITransport"]

LOGGER = logging.getLogger(__name__)

_RETRYABLE = (APIConnectionError, RateLimitError, httpx.TimeoutException)


class OpenAITransport:
    """Non-streamed chat completions with retry semantics."""

    backend = "openai"

    def __init__(
        self,
        settings: LLMSettings,
        *,
        client: AsyncOpenAI | Any | None = None,
        debug_logging: bool = False,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._debug_logging = debug_logging

    @property
    def settings(self) -> LLMSettings:
        return self._settings

    async def predict(self, request: PredictionRequest) -> PredictionResponse:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": build_chat_messages(request.context),
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
        }
        LOGGER.debug(
            "Requesting prediction for %s#%d via %s",
            request.document_id,
            request.sequence,
            self._settings.model,
        )
        if self._debug_logging:
            self._log_prompt_payload(payload)

        try:
            async for attempt in self._retrying():
                with attempt:
                    completion = await self._client.chat.completions.create(**payload)
        except (APITimeoutError, httpx.TimeoutException) as exc:
            raise TransportTimeout(
                message=f"Backend timed out: {exc}",
                timeout_seconds=self._settings.request_timeout,
            ) from exc
        except APIStatusError as exc:
            raise TransportError(
                error_code=ErrorCode.TRANSPORT_HTTP_STATUS,
                message=f"Backend returned HTTP {exc.status_code}",
                status_code=exc.status_code,
                retryable=isinstance(exc, RateLimitError) or exc.status_code >= 500,
            ) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(message=f"Backend request failed: {exc}", retryable=True) from exc

        text = _extract_text(completion)
        if text is None:
            raise TransportError(
                error_code=ErrorCode.TRANSPORT_BAD_PAYLOAD,
                message="Completion contained no message content",
            )
        return PredictionResponse(
            text=clean_completion(text),
            window_only=True,
            model=getattr(completion, "model", None),
            raw=completion,
        )

    async def health_check(self) -> HealthStatus:
        url = self._settings.url
        try:
            response = await self._client.models.list()
        except (APIError, httpx.HTTPError) as exc:
            return HealthStatus(ok=False, backend=self.backend, url=url, detail=str(exc))
        models = tuple(item.id for item in getattr(response, "data", []) if getattr(item, "id", None))
        return HealthStatus(ok=True, backend=self.backend, url=url, detail="models endpoint reachable", models=models)

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def _build_client(self, settings: LLMSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "not-needed",
            base_url=settings.url,
            timeout=settings.request_timeout,
            default_headers=headers,
            # retries are owned by tenacity
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries + 1)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE),
        )

    def _log_prompt_payload(self, payload: Dict[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Prediction payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Prediction payload:\n%s", serialized)


def _extract_text(completion: Any) -> str | None:
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content if isinstance(content, str) else None
