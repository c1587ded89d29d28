import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from gateway.schemas import ChatMessage
from .base import ProviderBackendError
from .streaming import HTTPStreamAdapter

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1024


class AnthropicAdapter(HTTPStreamAdapter):
    """Anthropic Messages API adapter.

    - System messages are lifted into the top-level "system" field
    - max_tokens is mandatory upstream; defaults to DEFAULT_MAX_TOKENS
    - Only text deltas are forwarded; other event types are ignored
    """

    def __init__(
        self,
        base_url: str = "https://api.anthropic.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(
            provider_name="anthropic",
            base_url=base_url,
            client=client,
            timeout=timeout,
            max_attempts=max_attempts,
        )

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _payload(self, model: str, history: List[ChatMessage], options: Dict[str, Any]) -> Dict[str, Any]:
        system = "\n\n".join(m.content for m in history if m.role == "system" and m.content)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in history if m.role != "system"],
            "max_tokens": options.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if options.get("temperature") is not None:
            payload["temperature"] = options["temperature"]
        return payload

    async def stream(
        self,
        credential: str,
        model: str,
        history: List[ChatMessage],
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        payload = self._payload(model, history, options or {})
        resp = await self._open_stream("/messages", self._headers(credential), payload)
        events = self._iter_events(resp)
        try:
            async for data in events:
                try:
                    event = json.loads(data)
                except ValueError:
                    logger.debug("Skipping malformed anthropic stream event: %s", data)
                    continue
                etype = event.get("type")
                if etype == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield delta["text"]
                elif etype == "error":
                    err = event.get("error") or {}
                    raise ProviderBackendError(self.name, err.get("message") or "stream error")
                elif etype == "message_stop":
                    break
        finally:
            await events.aclose()
