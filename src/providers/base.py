from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from gateway.schemas import ChatMessage


class ProviderBackendError(Exception):
    """Upstream call failed; carries the provider and the upstream message."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None, retry_after: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.provider} error ({self.status_code}): {self.message}"
        return f"{self.provider} error: {self.message}"


class ProviderAdapter(ABC):
    """Abstract base class for provider family adapters.

    One adapter serves every provider id aliased to its family, so the
    credential travels with each call instead of living on the instance.
    """

    name: str = "provider"

    @abstractmethod
    def stream(
        self,
        credential: str,
        model: str,
        history: List[ChatMessage],
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        """Stream completion text chunks for the given history.

        Implementations are async generators; transport and HTTP failures
        surface as ProviderBackendError.
        """

    async def aclose(self) -> None:
        """Release pooled connections, if any."""
