"""Built-in providers and TOML provider tables.

User providers live under ``[model_providers.<name>]`` in a TOML file::

    [model_providers.gateway]
    base_url = "https://ai-gateway.example.com/v1"
    wire_api = "chat"
    credential_env_key = "GATEWAY_API_KEY"

Entries override built-ins of the same name.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

# Python 3.11+ has tomllib in stdlib
import tomllib

from pydantic import ValidationError as PydanticValidationError

from castor.errors import ConfigurationError
from castor.providers.base import ProviderConfig, WireApi

if TYPE_CHECKING:
    from collections.abc import Mapping

PROVIDERS_FILE_ENV = "CASTOR_PROVIDERS_FILE"
PROVIDERS_TABLE = "model_providers"

BUILTIN_PROVIDERS: dict[str, ProviderConfig] = {
    "openai": ProviderConfig(
        name="openai",
        base_url="https://api.openai.com/v1",
        wire_api=WireApi.RESPONSES,
        credential_env_key="OPENAI_API_KEY",
    ),
    "gemini": ProviderConfig(
        name="gemini",
        base_url="https://generativelanguage.googleapis.com/v1beta",
        wire_api=WireApi.GEMINI,
        credential_env_key="GEMINI_API_KEY",
        auth_scheme="x-goog-api-key",
    ),
    "openrouter": ProviderConfig(
        name="openrouter",
        base_url="https://openrouter.ai/api/v1",
        wire_api=WireApi.CHAT_COMPLETIONS,
        credential_env_key="OPENROUTER_API_KEY",
    ),
    "ollama": ProviderConfig(
        name="ollama",
        base_url="http://localhost:11434/v1",
        wire_api=WireApi.CHAT_COMPLETIONS,
    ),
}


def _read_toml(path: Path) -> dict[str, Any]:
    """Read a TOML file, mapping parse and I/O failures to ConfigurationError."""
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Providers file not found: {path}",
            hint=f"Create the file or unset {PROVIDERS_FILE_ENV}.",
        ) from e
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Could not read providers file {path}: {e}") from e


def parse_provider(name: str, raw: Mapping[str, Any]) -> ProviderConfig:
    """Validate one provider record."""
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Provider {name!r} must be a table, got {type(raw).__name__}"
        )
    data = {"name": name, **raw}
    try:
        return ProviderConfig.model_validate(data)
    except PydanticValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        raise ConfigurationError(
            f"Invalid provider {name!r}: {loc}: {msg}",
            hint="Supported wire_api values: 'chat', 'responses', 'gemini'.",
        ) from e


def parse_providers(data: Mapping[str, Any]) -> dict[str, ProviderConfig]:
    """Parse the ``model_providers`` table of an already-loaded TOML document."""
    table = data.get(PROVIDERS_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigurationError(f"[{PROVIDERS_TABLE}] must be a table")
    return {name: parse_provider(name, raw) for name, raw in table.items()}


def load_providers(path: Path | str | None = None) -> dict[str, ProviderConfig]:
    """Return built-in providers overlaid with entries from a TOML file.

    The file is *path*, or the file named by ``CASTOR_PROVIDERS_FILE``; with
    neither, only built-ins are returned.
    """
    providers = dict(BUILTIN_PROVIDERS)
    if path is None:
        env_path = os.environ.get(PROVIDERS_FILE_ENV)
        if not env_path:
            return providers
        path = env_path
    providers.update(parse_providers(_read_toml(Path(path))))
    return providers


def get_provider(
    name: str, providers: Mapping[str, ProviderConfig] | None = None
) -> ProviderConfig:
    """Select a provider by its top-level key."""
    table = providers if providers is not None else load_providers()
    try:
        return table[name]
    except KeyError:
        available = ", ".join(sorted(table))
        raise ConfigurationError(
            f"Unknown provider: {name!r}",
            hint=f"Available providers: {available}",
        ) from None
