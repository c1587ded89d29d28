from typing import Optional

import httpx

from .base_openai import BaseOpenAIAdapter


class GroqAdapter(BaseOpenAIAdapter):
    """Groq (OpenAI-compatible).

    Hosts the open-weight families (Llama, Gemma, DeepSeek, Mistral), so
    several catalog provider ids alias onto this one adapter and key.
    """

    def __init__(
        self,
        base_url: str = "https://api.groq.com/openai/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(
            provider_name="groq",
            base_url=base_url,
            client=client,
            timeout=timeout,
            max_attempts=max_attempts,
        )
