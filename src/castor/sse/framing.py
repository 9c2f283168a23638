"""Incremental server-sent-event framing.

The framer is fed raw network chunks and yields complete events. Output does
not depend on where chunk boundaries fall, including boundaries inside a
line or a multi-byte UTF-8 sequence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from castor.errors import ProtocolError, ResponseTooLarge

if TYPE_CHECKING:
    from collections.abc import Iterable

DEFAULT_MAX_EVENT_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True)
class SseEvent:
    """One dispatched event: the ``event:`` name and joined ``data:`` lines."""

    data: str
    event: str | None = None


class SseFramer:
    """Pull-based SSE framer.

    Lines end with ``\\n`` or ``\\r\\n``. A blank line dispatches the pending
    event. Comment lines (``:``) and ``id:``/``retry:`` fields are ignored.
    """

    def __init__(self, *, max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES) -> None:
        self._max_event_bytes = max_event_bytes
        self._buffer = bytearray()
        self._event_name: str | None = None
        self._data: list[str] = []
        self._pending_bytes = 0
        self._has_fields = False
        self._closed = False
        self._failure: ProtocolError | ResponseTooLarge | None = None

    def feed(self, chunk: bytes) -> list[SseEvent]:
        """Consume *chunk* and return every event it completes."""
        if self._closed:
            raise ProtocolError("SSE framer fed after close")
        if self._failure is not None:
            raise self._failure
        self._buffer.extend(chunk)
        events: list[SseEvent] = []
        try:
            while True:
                newline = self._buffer.find(b"\n")
                if newline < 0:
                    break
                raw = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                if raw.endswith(b"\r"):
                    raw = raw[:-1]
                event = self._process_line(raw)
                if event is not None:
                    events.append(event)
            # A trailing CR may still be the first half of a CRLF terminator.
            partial = len(self._buffer) - self._buffer.endswith(b"\r")
            self._check_size(partial)
        except (ProtocolError, ResponseTooLarge) as e:
            self._reset()
            self._buffer.clear()
            if not events:
                raise
            # Events completed before the failure are delivered first; the
            # failure surfaces on the next feed() or close().
            self._failure = e
        return events

    def close(self) -> None:
        """Signal connection close.

        Raises ProtocolError when the stream stopped inside an event, or the
        failure held back by the last feed().
        """
        if self._closed:
            return
        self._closed = True
        if self._failure is not None:
            raise self._failure
        partial = bool(self._buffer.strip()) or self._has_fields
        self._reset()
        self._buffer.clear()
        if partial:
            raise ProtocolError("stream closed mid-event")

    def _check_size(self, extra: int = 0) -> None:
        if self._pending_bytes + extra > self._max_event_bytes:
            raise ResponseTooLarge(
                f"SSE event exceeds {self._max_event_bytes} bytes",
                limit=self._max_event_bytes,
            )

    def _process_line(self, raw: bytes) -> SseEvent | None:
        if not raw:
            return self._dispatch()
        # Every non-blank line of an event counts toward the cap.
        self._pending_bytes += len(raw)
        self._check_size()
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"SSE line is not valid UTF-8: {e}") from e
        if line.startswith(":"):
            return None

        field_name, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]

        if field_name == "data":
            self._data.append(value)
            self._has_fields = True
        elif field_name == "event":
            self._event_name = value
            self._has_fields = True
        # id, retry, and unknown fields carry nothing we use.
        return None

    def _dispatch(self) -> SseEvent | None:
        # An event with no data lines is discarded.
        event = None
        if self._data:
            event = SseEvent(data="\n".join(self._data), event=self._event_name)
        self._reset()
        return event

    def _reset(self) -> None:
        self._event_name = None
        self._data = []
        self._pending_bytes = 0
        self._has_fields = False


def iter_sse_events(
    chunks: Iterable[bytes], *, max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES
) -> list[SseEvent]:
    """Frame a complete sequence of chunks, including the close check."""
    framer = SseFramer(max_event_bytes=max_event_bytes)
    events: list[SseEvent] = []
    for chunk in chunks:
        events.extend(framer.feed(chunk))
    framer.close()
    return events
