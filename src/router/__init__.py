from .registry import ProviderRegistry, ProviderDescriptor
from .core import ChatStream, Dispatcher, DispatchOptions, RequestLifecycle, RequestState
from .credentials import CredentialResolver
from .errors import DispatchError
from .pipeline import AuthSession, ChatPipeline

__all__ = [
    "ProviderRegistry",
    "ProviderDescriptor",
    "ChatStream",
    "Dispatcher",
    "DispatchOptions",
    "RequestLifecycle",
    "RequestState",
    "CredentialResolver",
    "DispatchError",
    "AuthSession",
    "ChatPipeline",
]
