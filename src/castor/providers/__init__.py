"""Provider configuration."""

from .base import AuthScheme, ProviderConfig, WireApi, coerce_wire_api
from .registry import BUILTIN_PROVIDERS, get_provider, load_providers, parse_providers

__all__ = [
    "BUILTIN_PROVIDERS",
    "AuthScheme",
    "ProviderConfig",
    "WireApi",
    "coerce_wire_api",
    "get_provider",
    "load_providers",
    "parse_providers",
]
