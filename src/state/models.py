from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageRecord(BaseModel):
    caller_id: str
    model_id: str
    request_count: int = Field(default=0, ge=0)
    tokens_used: int = Field(default=0, ge=0)
    last_reset: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @field_validator("last_reset", "updated_at")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Mongo hands back naive UTC unless the client is tz_aware
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ModelRateLimit(BaseModel):
    model_config = {"frozen": True}

    free_requests_per_day: int = 10
    subscriber_requests_per_day: int = 100
    free_tokens_per_day: int = 10_000  # ~6000 words
    subscriber_tokens_per_day: int = 100_000
    free_cooldown_seconds: Optional[int] = None
    subscriber_cooldown_seconds: Optional[int] = None


class StoredMessage(BaseModel):
    thread_id: str
    caller_id: str
    provider: str
    model: str
    role: str = "assistant"
    content: str
    created_at: datetime = Field(default_factory=utc_now)
