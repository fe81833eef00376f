"""Tests for the OpenAI-compatible chat transport."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from nextedit.core.errors import ErrorCode, TransportError, TransportTimeout
from nextedit.services.settings import LLMSettings
from nextedit.transport.openai_backend import OpenAITransport
from nextedit.transport.prompts import SYSTEM_PROMPT

from tests.helpers import make_request

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _settings(**overrides: Any) -> LLMSettings:
    values: dict[str, Any] = dict(
        model="gpt-test",
        max_retries=2,
        retry_min_seconds=0.0,
        retry_max_seconds=0.0,
    )
    values.update(overrides)
    return LLMSettings(**values)


def _completion(content: str | None) -> SimpleNamespace:
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], model="gpt-test")


def _status_error(cls: type[APIStatusError], status: int) -> APIStatusError:
    response = httpx.Response(status, request=_REQUEST)
    return cls(f"HTTP {status}", response=response, body=None)


class _FakeClient:
    """Replays scripted outcomes from ``chat.completions.create``."""

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self.models = SimpleNamespace(list=self._list_models)
        self.model_ids: list[str] = ["gpt-test"]
        self.models_error: Exception | None = None

    async def _create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def _list_models(self) -> Any:
        if self.models_error is not None:
            raise self.models_error
        return SimpleNamespace(data=[SimpleNamespace(id=model_id) for model_id in self.model_ids])

    async def close(self) -> None:
        self.closed = True


class TestPredict:
    @pytest.mark.asyncio
    async def test_sends_chat_payload_and_cleans_output(self) -> None:
        client = _FakeClient(_completion("```\nX\n```"))
        transport = OpenAITransport(_settings(temperature=0.2, max_tokens=64), client=client)

        response = await transport.predict(make_request("a\nb"))

        assert response.text == "X"
        assert response.window_only is True
        assert response.model == "gpt-test"
        call = client.calls[0]
        assert call["model"] == "gpt-test"
        assert call["temperature"] == 0.2
        assert call["max_tokens"] == 64
        assert call["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self) -> None:
        client = _FakeClient(APIConnectionError(request=_REQUEST), _completion("ok"))
        transport = OpenAITransport(_settings(), client=client)

        response = await transport.predict(make_request("a"))

        assert response.text == "ok"
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_maps_to_retryable_status(self) -> None:
        client = _FakeClient(*(_status_error(RateLimitError, 429) for _ in range(2)))
        transport = OpenAITransport(_settings(max_retries=1), client=client)

        with pytest.raises(TransportError) as excinfo:
            await transport.predict(make_request("a"))

        assert len(client.calls) == 2
        assert excinfo.value.error_code == ErrorCode.TRANSPORT_HTTP_STATUS
        assert excinfo.value.status_code == 429
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_client_status_errors_are_not_retried(self) -> None:
        client = _FakeClient(_status_error(APIStatusError, 401))
        transport = OpenAITransport(_settings(), client=client)

        with pytest.raises(TransportError) as excinfo:
            await transport.predict(make_request("a"))

        assert len(client.calls) == 1
        assert excinfo.value.status_code == 401
        assert not excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_timeouts_map_to_transport_timeout(self) -> None:
        client = _FakeClient(APITimeoutError(request=_REQUEST))
        transport = OpenAITransport(_settings(max_retries=0, request_timeout=3.0), client=client)

        with pytest.raises(TransportTimeout) as excinfo:
            await transport.predict(make_request("a"))

        assert excinfo.value.timeout_seconds == 3.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("completion", [_completion(None), SimpleNamespace(choices=[])])
    async def test_missing_content_is_bad_payload(self, completion: Any) -> None:
        transport = OpenAITransport(_settings(), client=_FakeClient(completion))

        with pytest.raises(TransportError) as excinfo:
            await transport.predict(make_request("a"))

        assert excinfo.value.error_code == ErrorCode.TRANSPORT_BAD_PAYLOAD

    @pytest.mark.asyncio
    async def test_debug_logging_dumps_payload(self, caplog: pytest.LogCaptureFixture) -> None:
        transport = OpenAITransport(_settings(), client=_FakeClient(_completion("x")), debug_logging=True)

        with caplog.at_level("DEBUG", logger="nextedit.transport.openai_backend"):
            await transport.predict(make_request("a"))

        assert "Prediction payload" in caplog.text


class TestHealthAndLifecycle:
    @pytest.mark.asyncio
    async def test_health_lists_models(self) -> None:
        client = _FakeClient()
        client.model_ids = ["a", "b"]

        status = await OpenAITransport(_settings(), client=client).health_check()

        assert status.ok
        assert status.backend == "openai"
        assert status.models == ("a", "b")

    @pytest.mark.asyncio
    async def test_health_reports_errors(self) -> None:
        client = _FakeClient()
        client.models_error = APIConnectionError(request=_REQUEST)

        status = await OpenAITransport(_settings(), client=client).health_check()

        assert not status.ok

    @pytest.mark.asyncio
    async def test_aclose_closes_client(self) -> None:
        client = _FakeClient()

        await OpenAITransport(_settings(), client=client).aclose()

        assert client.closed

    def test_builds_real_client_without_sdk_retries(self) -> None:
        transport = OpenAITransport(_settings(url="http://localhost:9999/v1"))

        client = transport._client
        assert client.max_retries == 0
        assert client.api_key == "not-needed"
        assert str(client.base_url).startswith("http://localhost:9999/v1")
