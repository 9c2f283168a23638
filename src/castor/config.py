"""Configuration: frozen Config resolving provider, family, and credential once."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from castor.dispatcher import Dispatcher, StreamLimits
from castor.errors import ConfigurationError
from castor.families import resolve_family
from castor.providers.registry import get_provider, load_providers
from castor.requests._common import SIGNATURE_POLICIES
from castor.sse import DEFAULT_MAX_ARGUMENT_BYTES, DEFAULT_MAX_EVENT_BYTES

if TYPE_CHECKING:
    from pathlib import Path

    import httpx

    from castor.families import ModelFamily
    from castor.providers.base import ProviderConfig
    from castor.requests import SignaturePolicy

load_dotenv()


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one provider/model pairing.

    Provider and model are required. The provider is looked up among the
    built-ins plus any ``[model_providers]`` entries in *providers_file* (or
    the file named by ``CASTOR_PROVIDERS_FILE``). The API key is resolved from
    the provider's ``credential_env_key`` when not passed.

    Example:
        config = Config(provider="gemini", model="gemini-2.5-pro")
        # API key is automatically resolved from GEMINI_API_KEY
    """

    provider: str
    model: str
    api_key: str | None = None
    providers_file: Path | str | None = None
    max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES
    max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES
    signature_policy: SignaturePolicy = "strict"
    provider_config: ProviderConfig = field(init=False, repr=False, compare=False)
    family: ModelFamily = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Resolve provider, family and API key; validate limits."""
        if not self.model or not self.model.strip():
            raise ConfigurationError(
                "model must be a non-empty string",
                hint="Pass model=... with the provider's model name.",
            )
        if self.signature_policy not in SIGNATURE_POLICIES:
            raise ConfigurationError(
                f"Unknown signature_policy: {self.signature_policy!r}",
                hint="Use one of: strict, placeholder, omit.",
            )
        if self.max_argument_bytes < 1:
            raise ConfigurationError(
                f"max_argument_bytes must be >= 1, got {self.max_argument_bytes}",
                hint="This caps the size of one function call's arguments.",
            )
        if self.max_event_bytes < 1:
            raise ConfigurationError(
                f"max_event_bytes must be >= 1, got {self.max_event_bytes}",
                hint="This caps the size of one server-sent event.",
            )

        providers = load_providers(self.providers_file)
        provider_config = get_provider(self.provider, providers)
        object.__setattr__(self, "provider_config", provider_config)
        object.__setattr__(self, "family", resolve_family(self.model))
        object.__setattr__(self, "api_key", provider_config.resolve_api_key(self.api_key))

    @property
    def limits(self) -> StreamLimits:
        return StreamLimits(
            max_argument_bytes=self.max_argument_bytes,
            max_event_bytes=self.max_event_bytes,
        )

    def dispatcher(self, *, client: httpx.AsyncClient | None = None) -> Dispatcher:
        """Create a Dispatcher bound to this configuration."""
        return Dispatcher(
            self.provider_config,
            model=self.model,
            api_key=self.api_key,
            family=self.family,
            limits=self.limits,
            signature_policy=self.signature_policy,
            client=client,
        )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"wire_api={self.provider_config.wire_api.value!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None})"
        )

    __repr__ = __str__
