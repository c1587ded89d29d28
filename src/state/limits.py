import logging
import math
import os
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import ModelRateLimit

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = ModelRateLimit()


class RateLimitTable:
    """Per-model rate limit configuration.

    Loaded once at startup and never mutated afterwards. Models without an
    explicit entry get the table default.
    """

    def __init__(
        self,
        models: Optional[Mapping[str, ModelRateLimit]] = None,
        default: ModelRateLimit = DEFAULT_RATE_LIMIT,
    ) -> None:
        self._models = MappingProxyType(dict(models or {}))
        self._default = default

    @property
    def default(self) -> ModelRateLimit:
        return self._default

    def for_model(self, model_id: str) -> ModelRateLimit:
        return self._models.get(model_id, self._default)

    def model_ids(self) -> List[str]:
        return list(self._models.keys())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateLimitTable":
        default_cfg = data.get("default") or {}
        default = ModelRateLimit(**default_cfg) if default_cfg else DEFAULT_RATE_LIMIT
        models: Dict[str, ModelRateLimit] = {}
        for model_id, cfg in (data.get("models") or {}).items():
            if not isinstance(cfg, dict):
                logger.warning("Ignoring malformed rate limit entry for %s", model_id)
                continue
            models[str(model_id).strip()] = ModelRateLimit(**cfg)
        return cls(models=models, default=default)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "RateLimitTable":
        if not path:
            path = os.getenv(
                "MODEL_LIMITS_PATH",
                os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "model_limits.yaml"),
            )
        try:
            with open(path, "r", encoding="utf-8") as f:
                table = cls.from_dict(yaml.safe_load(f) or {})
        except FileNotFoundError:
            logger.warning("Model limits file not found at %s; using default limits for every model", path)
            return cls()
        logger.info("Rate limits loaded for %s", ", ".join(table.model_ids()) or "<default only>")
        return table


def estimate_token_count(text: str) -> int:
    # Rough heuristic: ~4 characters per token
    return max(0, math.ceil(len(text or "") / 4))
