"""Castor: streaming completions over ChatCompletions, Responses and Gemini APIs.

Public API:
    - Config: Provider/model configuration
    - Dispatcher: Sends one turn and streams normalized events
    - Conversation, Message, FunctionCall, FunctionCallOutput, Reasoning: History items
    - open_dispatcher(): Build a Dispatcher from a Config or keyword arguments
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from castor.config import Config
from castor.dispatcher import (
    WIRE_CODECS,
    Dispatcher,
    StreamLimits,
    TurnStream,
    WireRequest,
    stream_from_fixture,
)
from castor.errors import (
    AuthError,
    CastorError,
    ConfigError,
    ConfigurationError,
    ContentFilteredError,
    ContextWindowExceededError,
    ProtocolError,
    RateLimitError,
    ResponseTooLarge,
    TransportError,
    UpstreamError,
    ValidationError,
)
from castor.events import (
    Completed,
    Failed,
    FunctionCallArgumentDelta,
    FunctionCallDone,
    FunctionCallStart,
    ReasoningDelta,
    ReasoningDone,
    StreamEvent,
    TextDelta,
    TokenUsage,
    TurnAccumulator,
    UsageReported,
)
from castor.families import ModelFamily, resolve_family
from castor.items import (
    Conversation,
    FunctionCall,
    FunctionCallOutput,
    ImagePart,
    Message,
    Prompt,
    Reasoning,
    TextPart,
)
from castor.providers import ProviderConfig, WireApi, get_provider, load_providers
from castor.retry import RetryPolicy, retry_async, should_retry_turn
from castor.tools import ToolSpec

if TYPE_CHECKING:
    import httpx

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-stream")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())


def open_dispatcher(
    config: Config | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    **config_kwargs: Any,
) -> Dispatcher:
    """Return a Dispatcher for *config*, or for ``Config(**config_kwargs)``.

    Example:
        async with open_dispatcher(provider="gemini", model="gemini-2.5-pro") as d:
            turn = await d.stream(d.prompt([Message(role="user", content="hi")]))
            acc = await turn.collect()
    """
    if config is None:
        config = Config(**config_kwargs)
    elif config_kwargs:
        raise ConfigurationError(
            "Pass either a Config or keyword arguments, not both",
            hint="Use open_dispatcher(config) or open_dispatcher(provider=..., model=...).",
        )
    return config.dispatcher(client=client)


__all__ = [
    "WIRE_CODECS",
    "AuthError",
    "CastorError",
    "Completed",
    "ConfigError",
    "Config",
    "ConfigurationError",
    "ContentFilteredError",
    "ContextWindowExceededError",
    "Conversation",
    "Dispatcher",
    "Failed",
    "FunctionCall",
    "FunctionCallArgumentDelta",
    "FunctionCallDone",
    "FunctionCallOutput",
    "FunctionCallStart",
    "ImagePart",
    "Message",
    "ModelFamily",
    "Prompt",
    "ProtocolError",
    "ProviderConfig",
    "RateLimitError",
    "Reasoning",
    "ReasoningDelta",
    "ReasoningDone",
    "ResponseTooLarge",
    "RetryPolicy",
    "StreamEvent",
    "StreamLimits",
    "TextDelta",
    "TextPart",
    "TokenUsage",
    "ToolSpec",
    "TransportError",
    "TurnAccumulator",
    "TurnStream",
    "UpstreamError",
    "UsageReported",
    "ValidationError",
    "WireApi",
    "WireRequest",
    "get_provider",
    "load_providers",
    "open_dispatcher",
    "resolve_family",
    "retry_async",
    "should_retry_turn",
    "stream_from_fixture",
]
