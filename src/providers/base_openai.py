import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from gateway.schemas import ChatMessage
from .base import ProviderBackendError
from .streaming import HTTPStreamAdapter

logger = logging.getLogger(__name__)


class BaseOpenAIAdapter(HTTPStreamAdapter):
    """Base adapter for OpenAI-compatible chat completions providers.

    Subclasses provide the provider name and base_url, and may add headers.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(
            provider_name=provider_name,
            base_url=base_url,
            client=client,
            timeout=timeout,
            max_attempts=max_attempts,
        )

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _payload(self, model: str, history: List[ChatMessage], options: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in history],
            "stream": True,
        }
        if options.get("temperature") is not None:
            payload["temperature"] = options["temperature"]
        if options.get("max_tokens") is not None:
            payload["max_tokens"] = options["max_tokens"]
        return payload

    async def stream(
        self,
        credential: str,
        model: str,
        history: List[ChatMessage],
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        payload = self._payload(model, history, options or {})
        resp = await self._open_stream("/chat/completions", self._headers(credential), payload)
        events = self._iter_events(resp)
        try:
            async for data in events:
                try:
                    chunk = json.loads(data)
                except ValueError:
                    logger.debug("Skipping malformed %s stream event: %s", self.name, data)
                    continue
                if chunk.get("error"):
                    err = chunk["error"]
                    message = err.get("message") if isinstance(err, dict) else str(err)
                    raise ProviderBackendError(self.name, message or "stream error")
                for choice in chunk.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield content
        finally:
            await events.aclose()
