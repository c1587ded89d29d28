import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

import yaml

from gateway.schemas import ReasonCode
from providers.anthropic import AnthropicAdapter
from providers.base import ProviderAdapter
from providers.groq import GroqAdapter
from providers.openai import OpenAIAdapter
from providers.openrouter import OpenRouterAdapter
from .errors import DispatchError

logger = logging.getLogger(__name__)

# Backend family -> adapter variant. Catalog entries pick a family; several
# provider ids may share one.
ADAPTER_FAMILIES: Mapping[str, Type[ProviderAdapter]] = MappingProxyType(
    {
        "openai": OpenAIAdapter,
        "anthropic": AnthropicAdapter,
        "openrouter": OpenRouterAdapter,
        "groq": GroqAdapter,
    }
)


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    name: str
    family: str
    credential_source: str  # env var holding the platform key
    default_model: str
    models: Tuple[str, ...] = field(default_factory=tuple)
    free: bool = False  # open to authenticated non-subscribers on the platform key


class ProviderRegistry:
    """Static provider catalog.

    - Holds one descriptor per provider id (ids are case-insensitive)
    - Provider ids sharing a family form an alias group: same adapter, same key
    """

    def __init__(self, providers: Iterable[ProviderDescriptor]) -> None:
        catalog: Dict[str, ProviderDescriptor] = {}
        for p in providers:
            if p.family not in ADAPTER_FAMILIES:
                logger.warning("Skipping provider %s: unknown backend family %s", p.id, p.family)
                continue
            catalog[p.id.lower()] = p
        self._providers = MappingProxyType(catalog)
        logger.info("Provider catalog loaded: %s", ", ".join(self.provider_ids()) or "<empty>")

    def provider_ids(self) -> List[str]:
        return [p.id for p in self._providers.values()]

    def get_providers(self) -> List[ProviderDescriptor]:
        return list(self._providers.values())

    def get_provider(self, provider_id: str) -> Optional[ProviderDescriptor]:
        return self._providers.get((provider_id or "").strip().lower())

    def resolve_config(self, provider_id: str) -> ProviderDescriptor:
        descriptor = self.get_provider(provider_id)
        if descriptor is None:
            raise DispatchError(
                ReasonCode.UNSUPPORTED_PROVIDER,
                f"Provider {provider_id} is not supported. Known providers: {', '.join(self.provider_ids())}",
                provider=provider_id,
            )
        return descriptor

    def alias_group(self, provider_id: str) -> List[str]:
        descriptor = self.resolve_config(provider_id)
        return [p.id for p in self._providers.values() if p.family == descriptor.family]

    def credential_sources(self) -> List[str]:
        return sorted({p.credential_source for p in self._providers.values()})

    def build_adapter(self, family: str, **kwargs: Any) -> ProviderAdapter:
        adapter_cls = ADAPTER_FAMILIES.get(family)
        if adapter_cls is None:
            raise ValueError(f"Unknown backend family: {family}")
        return adapter_cls(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderRegistry":
        providers: List[ProviderDescriptor] = []
        for pid, cfg in (data.get("providers") or {}).items():
            if not isinstance(cfg, dict):
                logger.warning("Ignoring malformed provider entry %s", pid)
                continue
            models = tuple(str(m) for m in cfg.get("models") or [])
            try:
                providers.append(
                    ProviderDescriptor(
                        id=str(pid),
                        name=cfg.get("name", str(pid)),
                        family=cfg["family"],
                        credential_source=cfg["credential"],
                        default_model=cfg.get("default_model") or (models[0] if models else ""),
                        models=models,
                        free=bool(cfg.get("free", False)),
                    )
                )
            except KeyError as e:
                logger.warning("Provider %s is missing required field %s", pid, e)
        return cls(providers)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "ProviderRegistry":
        if not path:
            path = os.getenv(
                "PROVIDER_CATALOG_PATH",
                os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "providers.yaml"),
            )
        try:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_dict(yaml.safe_load(f) or {})
        except FileNotFoundError:
            logger.warning("Provider catalog not found at %s; no providers available", path)
            return cls([])
