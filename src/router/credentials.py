import logging
import os
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from gateway.schemas import ReasonCode
from .errors import DispatchError
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


def platform_credentials_from_env(sources: Iterable[str]) -> Mapping[str, str]:
    """Read the platform's upstream keys once, keyed by env var name."""
    creds = {}
    for source in sources:
        value = os.getenv(source, "").strip()
        if value:
            creds[source] = value
        else:
            logger.warning("%s not set; platform access to providers using it will fail.", source)
    return MappingProxyType(creds)


class CredentialResolver:
    def __init__(self, registry: ProviderRegistry, platform_credentials: Mapping[str, str]) -> None:
        self._registry = registry
        self._platform = MappingProxyType(dict(platform_credentials))

    def resolve(
        self,
        provider_id: str,
        caller_key: Optional[str] = None,
        is_authenticated_and_subscribed: bool = False,
    ) -> str:
        descriptor = self._registry.resolve_config(provider_id)

        # Bring-your-own-key always wins
        if caller_key:
            return caller_key

        if is_authenticated_and_subscribed:
            credential = self._platform.get(descriptor.credential_source)
            if not credential:
                logger.error("No platform credential configured in %s for %s", descriptor.credential_source, descriptor.id)
                raise DispatchError(
                    ReasonCode.NO_KEY,
                    f"{descriptor.name} API key not configured on the server.",
                    provider=descriptor.id,
                )
            return credential

        raise DispatchError(
            ReasonCode.KEY_REQUIRED,
            f"API key required for {descriptor.name}. Please provide your own key or log in and subscribe.",
            provider=descriptor.id,
        )
