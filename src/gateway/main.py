import json
import logging
import os
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from gateway.auth import SessionProvider
from gateway.schemas import ChatError, ChatRequest, ProviderView, ReasonCode, UsageView
from router import ChatPipeline, ChatStream, CredentialResolver, Dispatcher, ProviderRegistry
from router.credentials import platform_credentials_from_env
from state.ledger import QuotaLedger
from state.limits import RateLimitTable
from state.messages import MessageStore
from state.mongo import init_mongo, close_mongo, get_db
from state.ratelimit import RateLimiter, reset_boundary

logger = logging.getLogger(__name__)

app = FastAPI(title="QuotaGate", version="0.1.0")

STATUS_BY_REASON: Dict[ReasonCode, int] = {
    ReasonCode.UNSUPPORTED_PROVIDER: 400,
    ReasonCode.EMPTY_HISTORY: 400,
    ReasonCode.KEY_REQUIRED: 401,
    ReasonCode.SUBSCRIPTION_REQUIRED: 403,
    ReasonCode.RATE_LIMITED: 429,
    ReasonCode.COOLDOWN: 429,
    ReasonCode.BACKEND_ERROR: 502,
    ReasonCode.NO_KEY: 503,
}


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.on_event("startup")
async def startup_event() -> None:
    _configure_logging()
    await init_mongo()
    db = get_db()

    # Configuration is loaded once and shared read-only by every request
    registry = ProviderRegistry.load()
    limits = RateLimitTable.load()
    ledger = QuotaLedger(db=db)
    rate_limiter = RateLimiter(ledger, limits)
    credentials = CredentialResolver(registry, platform_credentials_from_env(registry.credential_sources()))
    dispatcher = Dispatcher(registry, rate_limiter=rate_limiter, messages=MessageStore(db=db))

    app.state.registry = registry
    app.state.ledger = ledger
    app.state.rate_limiter = rate_limiter
    app.state.dispatcher = dispatcher
    app.state.sessions = SessionProvider(db=db)
    app.state.pipeline = ChatPipeline(registry, rate_limiter, credentials, dispatcher)

    logger.info("Gateway initialized with %d providers", len(registry.get_providers()))


@app.on_event("shutdown")
async def shutdown_event() -> None:
    dispatcher: Optional[Dispatcher] = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.aclose()
    await close_mongo()


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.get("/v1/providers", response_model=List[ProviderView])
async def list_providers():
    registry: ProviderRegistry = app.state.registry
    return [
        ProviderView(
            id=p.id,
            name=p.name,
            family=p.family,
            free=p.free,
            default_model=p.default_model,
            models=list(p.models),
            alias_group=registry.alias_group(p.id),
        )
        for p in registry.get_providers()
    ]


@app.get("/v1/usage/{caller_id}/{model_id:path}", response_model=UsageView)
async def usage(caller_id: str, model_id: str):
    ledger: QuotaLedger = app.state.ledger
    rate_limiter: RateLimiter = app.state.rate_limiter

    record = await ledger.peek(caller_id, model_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No usage recorded for this caller and model")
    limits = rate_limiter.limits.for_model(model_id)
    return UsageView(
        caller_id=record.caller_id,
        model_id=record.model_id,
        request_count=record.request_count,
        tokens_used=record.tokens_used,
        last_reset=record.last_reset,
        reset_at=reset_boundary(record.last_reset),
        limits=limits.model_dump(),
    )


@app.post("/v1/chat")
async def chat(
    req: ChatRequest,
    x_caller_id: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
):
    pipeline: ChatPipeline = app.state.pipeline
    sessions: SessionProvider = app.state.sessions

    try:
        session = await sessions.lookup(x_caller_id)
        result = await pipeline.handle(req, session=session, caller_key=x_api_key)
    except Exception as e:
        logger.exception("Chat request failed: %s", e)
        raise HTTPException(status_code=500, detail="An unexpected error occurred on the server.")

    if isinstance(result, ChatError):
        return JSONResponse(
            status_code=STATUS_BY_REASON.get(result.reason_code, 400),
            content=json.loads(result.model_dump_json()),
        )
    return _sse_response(result)


def _sse_response(stream: ChatStream) -> StreamingResponse:
    async def gen() -> AsyncIterator[bytes]:
        try:
            async for chunk in stream:
                yield f"data: {json.dumps({'content': chunk})}\n\n".encode("utf-8")
            if stream.error is not None:
                payload = json.loads(stream.error.model_dump_json(exclude_none=True))
                yield f"data: {json.dumps(payload)}\n\n".encode("utf-8")
            yield b"data: [DONE]\n\n"
        finally:
            await stream.aclose()

    return StreamingResponse(gen(), media_type="text/event-stream")
