from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ReasonCode(str, Enum):
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    KEY_REQUIRED = "KEY_REQUIRED"
    NO_KEY = "NO_KEY"  # platform misconfiguration
    EMPTY_HISTORY = "EMPTY_HISTORY"
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"
    COOLDOWN = "COOLDOWN"
    BACKEND_ERROR = "BACKEND_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"  # internal only


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = ""


class ChatRequest(BaseModel):
    provider: str
    messages: List[ChatMessage]
    model: Optional[str] = Field(default=None, description="Defaults to the provider's default model")
    thread_id: Optional[str] = None

    # Passed through to the upstream provider untouched
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)

    def llm_options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {}
        if self.temperature is not None:
            opts["temperature"] = self.temperature
        if self.max_tokens is not None:
            opts["max_tokens"] = self.max_tokens
        return opts

    def latest_user_text(self) -> str:
        for m in reversed(self.messages):
            if m.role == "user":
                return m.content
        return ""


class ChatError(BaseModel):
    content: str = ""
    provider: str
    error: str
    reason_code: ReasonCode
    reset_at: Optional[datetime] = None
    cooldown_seconds: Optional[int] = None


class ProviderView(BaseModel):
    id: str
    name: str
    family: str
    free: bool
    default_model: str
    models: List[str]
    alias_group: List[str]


class UsageView(BaseModel):
    caller_id: str
    model_id: str
    request_count: int
    tokens_used: int
    last_reset: datetime
    reset_at: datetime
    limits: Dict[str, Optional[int]]
