"""Provider connection facts: base URL, wire API, and credential source."""

from __future__ import annotations

from enum import Enum
import os
from typing import Any, Literal
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, field_validator

from castor.errors import AuthError, ConfigurationError


class WireApi(str, Enum):
    """Request/response schema a provider endpoint speaks."""

    CHAT_COMPLETIONS = "chat"
    RESPONSES = "responses"
    GEMINI = "gemini"


_WIRE_API_ALIASES: dict[str, WireApi] = {
    "chat": WireApi.CHAT_COMPLETIONS,
    "chat_completions": WireApi.CHAT_COMPLETIONS,
    "chatcompletions": WireApi.CHAT_COMPLETIONS,
    "responses": WireApi.RESPONSES,
    "responses_api": WireApi.RESPONSES,
    "responsesapi": WireApi.RESPONSES,
    "gemini": WireApi.GEMINI,
    "gemini_native": WireApi.GEMINI,
    "gemininative": WireApi.GEMINI,
}


def coerce_wire_api(value: WireApi | str) -> WireApi:
    """Resolve a wire API from an enum member or any accepted config spelling."""
    if isinstance(value, WireApi):
        return value
    key = value.strip().lower().replace("-", "_")
    try:
        return _WIRE_API_ALIASES[key]
    except KeyError:
        raise ConfigurationError(
            f"Unknown wire_api: {value!r}",
            hint="Supported wire_api values: 'chat', 'responses', 'gemini'.",
        ) from None


AuthScheme = Literal["bearer", "x-goog-api-key"]


class ProviderConfig(BaseModel):
    """Immutable per-provider connection record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    wire_api: WireApi = WireApi.CHAT_COMPLETIONS
    #: Environment variable holding the credential; None means no auth.
    credential_env_key: str | None = None
    auth_scheme: AuthScheme = "bearer"
    streaming: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    stream_idle_timeout_s: float = Field(default=300.0, gt=0)
    connect_timeout_s: float = Field(default=30.0, gt=0)
    #: Retry hints for orchestrators; the dispatcher itself never retries.
    request_max_retries: int = Field(default=4, ge=0, le=100)
    stream_max_retries: int = Field(default=5, ge=0, le=100)

    @field_validator("wire_api", mode="before")
    @classmethod
    def _normalize_wire_api(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().lower().replace("-", "_")
            if key in _WIRE_API_ALIASES:
                return _WIRE_API_ALIASES[key]
        return v

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def url_for(self, path: str) -> str:
        """Join *path* onto the base URL and append configured query params."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        if self.query_params:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}{urlencode(self.query_params)}"
        return url

    def resolve_api_key(self, api_key: str | None = None) -> str | None:
        """Return the credential for this provider.

        An explicit *api_key* wins; otherwise the variable named by
        ``credential_env_key`` is read. Missing credentials raise AuthError.
        """
        if api_key:
            return api_key
        if self.credential_env_key is None:
            return None
        value = os.environ.get(self.credential_env_key)
        if not value:
            raise AuthError(
                f"Missing credential for provider {self.name!r}",
                hint=f"Set the {self.credential_env_key} environment variable or pass api_key=...",
            )
        return value

    def auth_headers(self, api_key: str | None) -> dict[str, str]:
        if not api_key:
            return {}
        if self.auth_scheme == "x-goog-api-key":
            return {"x-goog-api-key": api_key}
        return {"Authorization": f"Bearer {api_key}"}
