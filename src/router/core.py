import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from gateway.schemas import ChatError, ChatMessage, ReasonCode
from providers.base import ProviderAdapter, ProviderBackendError
from state.limits import estimate_token_count
from state.messages import MessageStore
from state.models import StoredMessage
from state.ratelimit import RateLimiter
from .errors import DispatchError
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    DISPATCHING = "DISPATCHING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_TRANSITIONS: Mapping[RequestState, Set[RequestState]] = {
    RequestState.PENDING: {RequestState.VALIDATING},
    RequestState.VALIDATING: {RequestState.ALLOWED, RequestState.DENIED},
    RequestState.ALLOWED: {RequestState.DISPATCHING},
    # empty history and unknown providers are still caught at dispatch time
    RequestState.DISPATCHING: {RequestState.STREAMING, RequestState.FAILED, RequestState.DENIED},
    RequestState.STREAMING: {RequestState.COMPLETED, RequestState.FAILED},
    RequestState.DENIED: set(),
    RequestState.COMPLETED: set(),
    RequestState.FAILED: set(),
}


class RequestLifecycle:
    """Tracks one request through its states; DENIED, COMPLETED and FAILED are terminal.

    PENDING -> VALIDATING -> ALLOWED | DENIED, then ALLOWED -> DISPATCHING ->
    STREAMING -> COMPLETED | FAILED. DISPATCHING may also go to DENIED when the
    dispatcher is called directly and refuses the request itself (unknown
    provider, empty history); upstream failures there go to FAILED.
    """

    def __init__(self, state: RequestState = RequestState.PENDING) -> None:
        self.state = state
        self.reason_code: Optional[ReasonCode] = None
        self.reason: Optional[str] = None

    def transition(self, new_state: RequestState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid request transition {self.state.value} -> {new_state.value}")
        logger.debug("Request %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def finish(self, new_state: RequestState, error: ChatError) -> None:
        self.transition(new_state)
        self.reason_code = error.reason_code
        self.reason = error.error


@dataclass
class DispatchOptions:
    credential: str
    model: Optional[str] = None
    caller_id: Optional[str] = None
    thread_id: Optional[str] = None
    llm_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchRequest:
    provider_id: str
    history: List[ChatMessage]
    model: str
    credential: str
    caller_id: Optional[str] = None
    thread_id: Optional[str] = None

    def prompt_text(self) -> str:
        for m in reversed(self.history):
            if m.role == "user":
                return m.content
        return ""


class ChatStream:
    """Live token stream for one dispatched request.

    Iterate it once. A backend failure mid-stream ends iteration with
    ``error`` set instead of raising. The completion hook only fires when the
    upstream stream ends normally, never when the consumer stops early.
    """

    def __init__(
        self,
        request: DispatchRequest,
        chunks: AsyncIterator[str],
        first: Optional[str],
        lifecycle: RequestLifecycle,
        on_complete: Callable[[DispatchRequest, str], None],
    ) -> None:
        self.request = request
        self.lifecycle = lifecycle
        self.error: Optional[ChatError] = None
        self._chunks = chunks
        self._first = first
        self._on_complete = on_complete
        self._parts: List[str] = []
        self._consumed = False

    @property
    def provider(self) -> str:
        return self.request.provider_id

    @property
    def model(self) -> str:
        return self.request.model

    @property
    def state(self) -> RequestState:
        return self.lifecycle.state

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("ChatStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            if self._first is not None:
                self._parts.append(self._first)
                yield self._first
            async for chunk in self._chunks:
                self._parts.append(chunk)
                yield chunk
        except Exception as e:
            message = e.message if isinstance(e, ProviderBackendError) else str(e)
            logger.error("Stream from %s failed after %d chunks: %s", self.provider, len(self._parts), message)
            self.error = ChatError(provider=self.provider, error=message, reason_code=ReasonCode.BACKEND_ERROR)
            self.lifecycle.finish(RequestState.FAILED, self.error)
            return
        finally:
            await _aclose(self._chunks)

        self.lifecycle.transition(RequestState.COMPLETED)
        self._on_complete(self.request, self.text)

    async def aclose(self) -> None:
        """Drop the upstream stream without firing the completion hook."""
        self._consumed = True
        await _aclose(self._chunks)


async def _aclose(chunks: AsyncIterator[str]) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()


class Dispatcher:
    """Sends a chat history to the adapter of the provider's backend family.

    Completion bookkeeping (saving the message, recording usage) runs as an
    independent task so its failures never touch the delivered stream.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: Optional[RateLimiter] = None,
        messages: Optional[MessageStore] = None,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
    ) -> None:
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._messages = messages
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._pending: Set["asyncio.Task[None]"] = set()

    def _adapter_for(self, family: str) -> ProviderAdapter:
        adapter = self._adapters.get(family)
        if adapter is None:
            adapter = self._registry.build_adapter(family)
            self._adapters[family] = adapter
        return adapter

    async def send(
        self,
        provider_id: str,
        history: Sequence[ChatMessage],
        options: DispatchOptions,
        lifecycle: Optional[RequestLifecycle] = None,
    ) -> Union[ChatStream, ChatError]:
        lifecycle = lifecycle or RequestLifecycle(RequestState.ALLOWED)
        lifecycle.transition(RequestState.DISPATCHING)
        try:
            return await self._send(provider_id, history, options, lifecycle)
        except DispatchError as e:
            error = e.to_response()
            final = RequestState.FAILED if e.reason_code == ReasonCode.BACKEND_ERROR else RequestState.DENIED
            lifecycle.finish(final, error)
            logger.info("Dispatch to %s refused (%s): %s", provider_id, e.reason_code.value, e.message)
            return error

    async def _send(
        self,
        provider_id: str,
        history: Sequence[ChatMessage],
        options: DispatchOptions,
        lifecycle: RequestLifecycle,
    ) -> ChatStream:
        descriptor = self._registry.resolve_config(provider_id)
        adapter = self._adapter_for(descriptor.family)

        if not history:
            raise DispatchError(
                ReasonCode.EMPTY_HISTORY,
                f"Cannot send an empty message history to {descriptor.name}.",
                provider=descriptor.id,
            )

        request = DispatchRequest(
            provider_id=descriptor.id,
            history=list(history),
            model=options.model or descriptor.default_model,
            credential=options.credential,
            caller_id=options.caller_id,
            thread_id=options.thread_id,
        )

        logger.info("Dispatching to %s via %s adapter, model %s", descriptor.id, adapter.name, request.model)
        chunks = adapter.stream(request.credential, request.model, request.history, options.llm_options)
        # Pull the first chunk here so connection and HTTP errors come back as
        # a structured error instead of a broken stream.
        first: Optional[str]
        try:
            first = await chunks.__anext__()
        except StopAsyncIteration:
            first = None
        except ProviderBackendError as e:
            raise DispatchError(
                ReasonCode.BACKEND_ERROR,
                f"{descriptor.name} API Error: {e.message}",
                provider=descriptor.id,
            ) from e
        except Exception as e:
            logger.exception("Unexpected error calling %s: %s", descriptor.id, e)
            raise DispatchError(
                ReasonCode.BACKEND_ERROR,
                f"{descriptor.name} API Error: {e}",
                provider=descriptor.id,
            ) from e

        lifecycle.transition(RequestState.STREAMING)
        return ChatStream(request, chunks, first, lifecycle, self._on_complete)

    def _on_complete(self, request: DispatchRequest, text: str) -> None:
        if not request.caller_id:
            return
        task = asyncio.create_task(self._finalize(request, text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _finalize(self, request: DispatchRequest, text: str) -> None:
        if request.thread_id and self._messages is not None:
            try:
                await self._messages.save(
                    StoredMessage(
                        thread_id=request.thread_id,
                        caller_id=request.caller_id or "",
                        provider=request.provider_id,
                        model=request.model,
                        content=text,
                    )
                )
            except Exception as e:
                logger.warning(
                    "Failed to save assistant message for thread %s [%s]: %s",
                    request.thread_id,
                    ReasonCode.PERSISTENCE_ERROR.value,
                    e,
                )

        if self._rate_limiter is not None:
            tokens = estimate_token_count(request.prompt_text()) + estimate_token_count(text)
            try:
                await self._rate_limiter.record(request.caller_id, request.model, tokens)
            except Exception as e:  # pragma: no cover - record already swallows store errors
                logger.warning(
                    "Failed to record usage for %s [%s]: %s", request.caller_id, ReasonCode.PERSISTENCE_ERROR.value, e
                )

    async def drain(self) -> None:
        """Wait for outstanding completion bookkeeping."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        for adapter in self._adapters.values():
            try:
                await adapter.aclose()
            except Exception as e:  # pragma: no cover
                logger.warning("Failed to close %s adapter: %s", adapter.name, e)
