from datetime import datetime

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from fakes import FakeAdapter, FakeCollection
from gateway.schemas import ChatError, ChatMessage, ReasonCode
from providers.base import ProviderBackendError
from router import ChatStream, Dispatcher, DispatchOptions, ProviderDescriptor, ProviderRegistry, RequestState
from state.ledger import QuotaLedger
from state.messages import MessageStore
from state.ratelimit import RateLimiter


def _registry() -> ProviderRegistry:
    return ProviderRegistry(
        [
            ProviderDescriptor("meta", "Meta (Llama)", "groq", "GROQ_API_KEY", "llama-3.1-8b-instant", free=True),
            ProviderDescriptor("deepseek", "DeepSeek", "groq", "GROQ_API_KEY", "deepseek-r1-distill-llama-70b", free=True),
            ProviderDescriptor("openai", "OpenAI (ChatGPT)", "openai", "OPENAI_API_KEY", "gpt-3.5-turbo"),
        ]
    )


HISTORY = [ChatMessage(role="user", content="x" * 40)]


def _dispatcher(adapters, usage_col=None, message_col=None):
    usage_col = usage_col if usage_col is not None else FakeCollection()
    message_col = message_col if message_col is not None else FakeCollection()
    limiter = RateLimiter(QuotaLedger(collection=usage_col), clock=lambda: datetime(2026, 10, 19, 12).astimezone())
    return Dispatcher(_registry(), rate_limiter=limiter, messages=MessageStore(collection=message_col), adapters=adapters)


async def _collect(stream: ChatStream):
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_unsupported_provider_never_touches_backend():
    groq = FakeAdapter("groq")
    disp = _dispatcher({"groq": groq})
    result = await disp.send("not-a-real-provider", HISTORY, DispatchOptions(credential="k"))
    assert isinstance(result, ChatError)
    assert result.reason_code == ReasonCode.UNSUPPORTED_PROVIDER
    assert "meta" in result.error and "openai" in result.error
    assert groq.calls == []


@pytest.mark.asyncio
async def test_empty_history_never_touches_backend():
    groq = FakeAdapter("groq")
    disp = _dispatcher({"groq": groq})
    result = await disp.send("meta", [], DispatchOptions(credential="k"))
    assert isinstance(result, ChatError)
    assert result.reason_code == ReasonCode.EMPTY_HISTORY
    assert result.provider == "meta"
    assert result.content == ""
    assert groq.calls == []


@pytest.mark.asyncio
async def test_aliased_providers_share_one_adapter_and_use_defaults():
    groq = FakeAdapter("groq")
    disp = _dispatcher({"groq": groq})

    s1 = await disp.send("META", HISTORY, DispatchOptions(credential="gsk"))
    s2 = await disp.send("deepseek", HISTORY, DispatchOptions(credential="gsk", model="custom-model"))
    await _collect(s1)
    await _collect(s2)

    assert [c["model"] for c in groq.calls] == ["llama-3.1-8b-instant", "custom-model"]
    assert s1.provider == "meta"
    assert s2.model == "custom-model"


@pytest.mark.asyncio
async def test_stream_completes_and_records_usage():
    usage_col, message_col = FakeCollection(), FakeCollection()
    groq = FakeAdapter("groq", chunks=["abcd", "efgh"])
    disp = _dispatcher({"groq": groq}, usage_col, message_col)

    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk", caller_id="u1", thread_id="t1"))
    assert stream.state == RequestState.STREAMING
    assert await _collect(stream) == ["abcd", "efgh"]
    assert stream.state == RequestState.COMPLETED
    assert stream.text == "abcdefgh"

    await disp.drain()
    saved = message_col.docs[0]
    assert saved["content"] == "abcdefgh"
    assert saved["thread_id"] == "t1"
    assert saved["role"] == "assistant"
    usage = usage_col.docs[0]
    assert usage["caller_id"] == "u1"
    assert usage["model_id"] == "llama-3.1-8b-instant"
    assert usage["request_count"] == 1
    # 10 prompt tokens + 2 completion tokens
    assert usage["tokens_used"] == 12


@pytest.mark.asyncio
async def test_no_bookkeeping_without_caller():
    usage_col, message_col = FakeCollection(), FakeCollection()
    disp = _dispatcher({"groq": FakeAdapter("groq")}, usage_col, message_col)
    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="byok", thread_id="t1"))
    await _collect(stream)
    await disp.drain()
    assert usage_col.docs == [] and message_col.docs == []


@pytest.mark.asyncio
async def test_usage_recorded_without_thread():
    usage_col, message_col = FakeCollection(), FakeCollection()
    disp = _dispatcher({"groq": FakeAdapter("groq")}, usage_col, message_col)
    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk", caller_id="u1"))
    await _collect(stream)
    await disp.drain()
    assert message_col.docs == []
    assert usage_col.docs[0]["request_count"] == 1


@pytest.mark.asyncio
async def test_backend_error_is_structured():
    openai = FakeAdapter("openai", fail_before=ProviderBackendError("openai", "Incorrect API key provided", status_code=401))
    disp = _dispatcher({"openai": openai})
    result = await disp.send("openai", HISTORY, DispatchOptions(credential="bad"))
    assert isinstance(result, ChatError)
    assert result.reason_code == ReasonCode.BACKEND_ERROR
    assert result.provider == "openai"
    assert "Incorrect API key provided" in result.error


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_is_structured():
    openai = FakeAdapter("openai", fail_before=RuntimeError("boom"))
    disp = _dispatcher({"openai": openai})
    result = await disp.send("openai", HISTORY, DispatchOptions(credential="k"))
    assert isinstance(result, ChatError)
    assert result.reason_code == ReasonCode.BACKEND_ERROR
    assert "boom" in result.error


@pytest.mark.asyncio
async def test_mid_stream_failure_marks_stream_failed_and_skips_bookkeeping():
    usage_col = FakeCollection()
    groq = FakeAdapter("groq", chunks=["a", "b", "c"], fail_after=2)
    disp = _dispatcher({"groq": groq}, usage_col)
    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk", caller_id="u1"))
    assert await _collect(stream) == ["a", "b"]
    assert stream.state == RequestState.FAILED
    assert stream.error is not None
    assert stream.error.reason_code == ReasonCode.BACKEND_ERROR
    await disp.drain()
    assert usage_col.docs == []


@pytest.mark.asyncio
async def test_consumer_disconnect_skips_bookkeeping():
    usage_col = FakeCollection()
    groq = FakeAdapter("groq", chunks=["a", "b", "c"])
    disp = _dispatcher({"groq": groq}, usage_col)
    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk", caller_id="u1"))

    it = stream.__aiter__()
    assert await it.__anext__() == "a"
    await it.aclose()
    await disp.drain()

    assert stream.state == RequestState.STREAMING
    assert usage_col.docs == []


@pytest.mark.asyncio
async def test_bookkeeping_failures_do_not_affect_stream(caplog):
    usage_col, message_col = FakeCollection(), FakeCollection()
    usage_col.fail = RuntimeError("usage store down")
    message_col.fail = RuntimeError("message store down")
    disp = _dispatcher({"groq": FakeAdapter("groq", chunks=["ok"])}, usage_col, message_col)

    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk", caller_id="u1", thread_id="t1"))
    assert await _collect(stream) == ["ok"]
    await disp.drain()

    assert stream.state == RequestState.COMPLETED
    assert "Failed to save assistant message" in caplog.text
    assert "Failed to record usage" in caplog.text
    assert caplog.text.count("PERSISTENCE_ERROR") >= 2


@pytest.mark.asyncio
async def test_stream_can_only_be_consumed_once():
    disp = _dispatcher({"groq": FakeAdapter("groq")})
    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk"))
    await _collect(stream)
    with pytest.raises(RuntimeError):
        stream.__aiter__()


@pytest.mark.asyncio
async def test_empty_completion_still_completes():
    usage_col = FakeCollection()
    disp = _dispatcher({"groq": FakeAdapter("groq", chunks=[])}, usage_col)
    stream = await disp.send("meta", HISTORY, DispatchOptions(credential="gsk", caller_id="u1"))
    assert await _collect(stream) == []
    assert stream.state == RequestState.COMPLETED
    await disp.drain()
    assert usage_col.docs[0]["tokens_used"] == 10
