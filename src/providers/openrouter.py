import os
from typing import Dict, Optional

import httpx

from .base_openai import BaseOpenAIAdapter


class OpenRouterAdapter(BaseOpenAIAdapter):
    """OpenRouter adapter; model ids are vendor-prefixed, e.g. "openai/gpt-4o"."""

    def __init__(
        self,
        base_url: str = "https://openrouter.ai/api/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        referer: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        super().__init__(
            provider_name="openrouter",
            base_url=base_url,
            client=client,
            timeout=timeout,
            max_attempts=max_attempts,
        )
        self._referer = referer or os.getenv("OPENROUTER_REFERER", "")
        self._title = title or os.getenv("OPENROUTER_TITLE", "")

    def _headers(self, credential: str) -> Dict[str, str]:
        headers = super()._headers(credential)
        # Optional app attribution shown on openrouter.ai
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        if self._title:
            headers["X-Title"] = self._title
        return headers
