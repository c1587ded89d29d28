from datetime import datetime
from typing import Optional

from gateway.schemas import ChatError, ReasonCode


class DispatchError(Exception):
    """A request was refused or failed before any output reached the caller."""

    def __init__(
        self,
        reason_code: ReasonCode,
        message: str,
        provider: str = "",
        reset_at: Optional[datetime] = None,
        cooldown_seconds: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.message = message
        self.provider = provider
        self.reset_at = reset_at
        self.cooldown_seconds = cooldown_seconds

    def to_response(self) -> ChatError:
        return ChatError(
            provider=self.provider,
            error=self.message,
            reason_code=self.reason_code,
            reset_at=self.reset_at,
            cooldown_seconds=self.cooldown_seconds,
        )
