import logging
from dataclasses import dataclass
from typing import Optional, Union

from gateway.schemas import ChatError, ChatRequest, ReasonCode
from state.ratelimit import RateLimiter
from .core import ChatStream, Dispatcher, DispatchOptions, RequestLifecycle, RequestState
from .credentials import CredentialResolver
from .errors import DispatchError
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSession:
    caller_id: str
    is_subscribed: bool = False


class ChatPipeline:
    """Gatekeeping for one chat request: validate, meter, resolve key, dispatch.

    Quotas apply only to platform-mediated usage: an authenticated caller
    without their own key on a provider they may use through the platform
    (subscribed, or the provider is free).
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: RateLimiter,
        credentials: CredentialResolver,
        dispatcher: Dispatcher,
    ) -> None:
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._credentials = credentials
        self._dispatcher = dispatcher

    async def handle(
        self,
        request: ChatRequest,
        session: Optional[AuthSession] = None,
        caller_key: Optional[str] = None,
        lifecycle: Optional[RequestLifecycle] = None,
    ) -> Union[ChatStream, ChatError]:
        lifecycle = lifecycle or RequestLifecycle()
        lifecycle.transition(RequestState.VALIDATING)
        caller_key = (caller_key or "").strip() or None

        try:
            descriptor = self._registry.resolve_config(request.provider)
            platform_access = session is not None and (session.is_subscribed or descriptor.free)
            model_id = request.model or descriptor.default_model
            metered_caller = session.caller_id if session is not None and platform_access and not caller_key else None

            decision = await self._rate_limiter.check(
                metered_caller,
                model_id,
                request.latest_user_text(),
                bool(session is not None and session.is_subscribed),
            )
            if not decision.allowed:
                raise DispatchError(
                    decision.reason_code or ReasonCode.RATE_LIMITED,
                    decision.reason or "Request denied.",
                    provider=descriptor.id,
                    reset_at=decision.reset_at,
                    cooldown_seconds=decision.cooldown_seconds,
                )

            credential = self._credentials.resolve(descriptor.id, caller_key, platform_access)
        except DispatchError as e:
            error = e.to_response()
            lifecycle.finish(RequestState.DENIED, error)
            logger.info("Request for %s denied (%s): %s", request.provider, e.reason_code.value, e.message)
            return error

        lifecycle.transition(RequestState.ALLOWED)
        if decision.remaining is not None:
            logger.debug("%s has %d requests left today on %s", metered_caller, decision.remaining, model_id)

        return await self._dispatcher.send(
            descriptor.id,
            request.messages,
            DispatchOptions(
                credential=credential,
                model=model_id,
                caller_id=metered_caller,
                thread_id=request.thread_id,
                llm_options=request.llm_options(),
            ),
            lifecycle=lifecycle,
        )
