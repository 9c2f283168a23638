"""SSE framing and per-wire stream decoders."""

from ._calls import DEFAULT_MAX_ARGUMENT_BYTES
from .base import StreamDecoder
from .chat import ChatDecoder
from .framing import DEFAULT_MAX_EVENT_BYTES, SseEvent, SseFramer, iter_sse_events
from .gemini import GeminiDecoder
from .responses import ResponsesDecoder

__all__ = [
    "DEFAULT_MAX_ARGUMENT_BYTES",
    "DEFAULT_MAX_EVENT_BYTES",
    "ChatDecoder",
    "GeminiDecoder",
    "ResponsesDecoder",
    "SseEvent",
    "SseFramer",
    "StreamDecoder",
    "iter_sse_events",
]
