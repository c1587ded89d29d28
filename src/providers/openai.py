from typing import Optional

import httpx

from .base_openai import BaseOpenAIAdapter


class OpenAIAdapter(BaseOpenAIAdapter):
    """OpenAI chat completions."""

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(
            provider_name="openai",
            base_url=base_url,
            client=client,
            timeout=timeout,
            max_attempts=max_attempts,
        )
