"""Decoder protocol and payload helpers shared by the wire decoders."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from castor._http import ERROR_BODY_PREVIEW_CHARS
from castor.errors import ProtocolError

if TYPE_CHECKING:
    from castor.events import StreamEvent
    from castor.sse.framing import SseEvent


@runtime_checkable
class StreamDecoder(Protocol):
    """Minimal decoder protocol: feed, close, decode_body, discard."""

    def feed(self, event: SseEvent) -> list[StreamEvent]:
        """Consume one framed event and return the normalized events it yields."""
        ...

    def close(self) -> list[StreamEvent]:
        """Handle a clean connection close at an event boundary."""
        ...

    def decode_body(self, payload: Any) -> list[StreamEvent]:
        """Decode a complete non-streaming response body."""
        ...

    def discard(self) -> None:
        """Drop in-flight, unfinished state (used on cancellation)."""
        ...


def load_payload(data: str) -> dict[str, Any]:
    """Parse an event's data as a JSON object."""
    try:
        value = json.loads(data)
    except ValueError as e:
        preview = data[:ERROR_BODY_PREVIEW_CHARS]
        raise ProtocolError(f"malformed event payload: {e}: {preview!r}") from e
    if not isinstance(value, dict):
        raise ProtocolError(f"expected a JSON object, got {type(value).__name__}")
    return value


def as_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0
