import json
from typing import Any, Dict, List

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from gateway.schemas import ChatMessage
from providers.anthropic import AnthropicAdapter
from providers.base import ProviderBackendError
from providers.groq import GroqAdapter
from providers.openai import OpenAIAdapter
from providers.openrouter import OpenRouterAdapter
from providers.retry import calculate_backoff, is_retryable


class _MockTransport(httpx.AsyncBaseTransport):
    def __init__(self, handlers: Dict[str, Any]):
        self.handlers = handlers
        self.requests: List[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        self.requests.append(request)
        key = f"{request.method} {request.url.path}"
        handler = self.handlers.get(key)
        if handler is None:
            return httpx.Response(404, request=request, json={"error": "not found"})
        return await handler(request)


def _sse(*events: str) -> bytes:
    return "".join(f"data: {e}\n\n" for e in events).encode("utf-8")


def _openai_chunk(text: str) -> str:
    return json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]})


async def _collect(agen) -> List[str]:
    return [c async for c in agen]


HISTORY = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="hello"),
]


@pytest.mark.asyncio
async def test_openai_streams_deltas():
    async def chat_handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["model"] == "gpt-4o"
        assert payload["stream"] is True
        assert payload["messages"][1] == {"role": "user", "content": "hello"}
        assert payload["temperature"] == 0.2
        assert request.headers["authorization"] == "Bearer sk-test"
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(_openai_chunk("Hi"), json.dumps({"choices": [{"delta": {}}]}), _openai_chunk(" there"), "[DONE]"),
        )

    transport = _MockTransport({"POST /v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=transport)
    adapter = OpenAIAdapter(client=client)

    chunks = await _collect(adapter.stream("sk-test", "gpt-4o", HISTORY, {"temperature": 0.2}))
    assert chunks == ["Hi", " there"]

    await client.aclose()


@pytest.mark.asyncio
async def test_groq_uses_openai_compatible_path():
    async def chat_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(_openai_chunk("ok"), "[DONE]"))

    transport = _MockTransport({"POST /openai/v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://api.groq.com/openai/v1", transport=transport)
    adapter = GroqAdapter(client=client)

    assert await _collect(adapter.stream("gsk", "llama-3.1-8b-instant", HISTORY)) == ["ok"]
    assert adapter.name == "groq"

    await client.aclose()


@pytest.mark.asyncio
async def test_openrouter_attribution_headers():
    async def chat_handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["HTTP-Referer"] == "https://chat.example"
        assert request.headers["X-Title"] == "Example Chat"
        return httpx.Response(200, content=_sse(_openai_chunk("ok"), "[DONE]"))

    transport = _MockTransport({"POST /api/v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://openrouter.ai/api/v1", transport=transport)
    adapter = OpenRouterAdapter(client=client, referer="https://chat.example", title="Example Chat")

    assert await _collect(adapter.stream("or-key", "openai/gpt-4o", HISTORY)) == ["ok"]

    await client.aclose()


@pytest.mark.asyncio
async def test_http_error_raises_backend_error_without_retry():
    async def chat_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    transport = _MockTransport({"POST /v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=transport)
    adapter = OpenAIAdapter(client=client, max_attempts=3)

    with pytest.raises(ProviderBackendError) as exc:
        await _collect(adapter.stream("bad", "gpt-4o", HISTORY))
    assert exc.value.status_code == 401
    assert exc.value.message == "Incorrect API key provided"
    assert exc.value.provider == "openai"
    assert len(transport.requests) == 1

    await client.aclose()


@pytest.mark.asyncio
async def test_rate_limited_open_is_retried(monkeypatch):
    delays: List[float] = []

    async def no_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr("providers.streaming.asyncio.sleep", no_sleep)

    responses = [
        httpx.Response(429, headers={"retry-after": "3"}, json={"error": {"message": "slow down"}}),
        httpx.Response(200, content=_sse(_openai_chunk("done"), "[DONE]")),
    ]

    async def chat_handler(_: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    transport = _MockTransport({"POST /v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=transport)
    adapter = OpenAIAdapter(client=client, max_attempts=2)

    assert await _collect(adapter.stream("sk", "gpt-4o", HISTORY)) == ["done"]
    assert delays == [3.0]
    assert len(transport.requests) == 2

    await client.aclose()


@pytest.mark.asyncio
async def test_retries_exhausted(monkeypatch):
    async def no_sleep(_):
        return None

    monkeypatch.setattr("providers.streaming.asyncio.sleep", no_sleep)

    async def chat_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream unavailable")

    transport = _MockTransport({"POST /v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=transport)
    adapter = OpenAIAdapter(client=client, max_attempts=2)

    with pytest.raises(ProviderBackendError) as exc:
        await _collect(adapter.stream("sk", "gpt-4o", HISTORY))
    assert exc.value.status_code == 503
    assert exc.value.message == "upstream unavailable"
    assert len(transport.requests) == 2

    await client.aclose()


@pytest.mark.asyncio
async def test_error_event_inside_stream():
    async def chat_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(_openai_chunk("par"), json.dumps({"error": {"message": "overloaded"}})))

    transport = _MockTransport({"POST /v1/chat/completions": chat_handler})
    client = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=transport)
    adapter = OpenAIAdapter(client=client)

    received: List[str] = []
    with pytest.raises(ProviderBackendError, match="overloaded"):
        async for chunk in adapter.stream("sk", "gpt-4o", HISTORY):
            received.append(chunk)
    assert received == ["par"]

    await client.aclose()


@pytest.mark.asyncio
async def test_anthropic_messages_stream():
    async def messages_handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "hello"}]
        assert payload["max_tokens"] == 1024
        assert payload["stream"] is True
        body = _sse(
            json.dumps({"type": "message_start", "message": {"id": "msg_1"}}),
            json.dumps({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
            json.dumps({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}}),
            json.dumps({"type": "ping"}),
            json.dumps({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "!"}}),
            json.dumps({"type": "message_stop"}),
        )
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    transport = _MockTransport({"POST /v1/messages": messages_handler})
    client = httpx.AsyncClient(base_url="https://api.anthropic.com/v1", transport=transport)
    adapter = AnthropicAdapter(client=client)

    assert await _collect(adapter.stream("sk-ant", "claude-3-haiku-20240307", HISTORY)) == ["Hello", "!"]

    await client.aclose()


@pytest.mark.asyncio
async def test_anthropic_error_event():
    async def messages_handler(_: httpx.Request) -> httpx.Response:
        body = _sse(json.dumps({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}))
        return httpx.Response(200, content=body)

    transport = _MockTransport({"POST /v1/messages": messages_handler})
    client = httpx.AsyncClient(base_url="https://api.anthropic.com/v1", transport=transport)
    adapter = AnthropicAdapter(client=client)

    with pytest.raises(ProviderBackendError, match="Overloaded"):
        await _collect(adapter.stream("sk-ant", "claude-3-haiku-20240307", HISTORY))

    await client.aclose()


def test_retry_classification():
    assert is_retryable(None) is True
    assert is_retryable(429) is True
    assert is_retryable(503) is True
    assert is_retryable(400) is False
    assert is_retryable(401) is False


def test_backoff_prefers_retry_after_with_cap():
    assert calculate_backoff(1) == 1.0
    assert calculate_backoff(2) == 2.0
    assert calculate_backoff(5) == 2.0
    assert calculate_backoff(1, "4") == 4.0
    assert calculate_backoff(1, "600") == 10.0
    assert calculate_backoff(2, "Wed, 21 Oct 2015 07:28:00 GMT") == 2.0
