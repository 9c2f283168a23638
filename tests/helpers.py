"""Test helpers (small, reusable stream builders).

Keep this file tiny and purpose-built: it exists so decoder and dispatcher
suites share one way of writing SSE bodies and splitting them into reads.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx

from castor.events import StreamEvent, TurnAccumulator
from castor.sse import SseFramer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from castor.sse import StreamDecoder


def sse(payload: dict[str, Any] | str, *, event: str | None = None) -> bytes:
    """Encode one SSE event; dicts are JSON-serialized."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {data}\n\n".encode()


def sse_body(*payloads: dict[str, Any] | str) -> bytes:
    return b"".join(sse(p) for p in payloads)


def split_at(data: bytes, cuts: Iterable[int]) -> list[bytes]:
    """Split *data* at the given byte offsets (out-of-range offsets ignored)."""
    points = sorted({c for c in cuts if 0 < c < len(data)})
    chunks: list[bytes] = []
    start = 0
    for point in points:
        chunks.append(data[start:point])
        start = point
    chunks.append(data[start:])
    return chunks


def decode_chunks(decoder: StreamDecoder, chunks: Sequence[bytes]) -> list[StreamEvent]:
    """Run chunks through a framer and *decoder*, including the close path."""
    framer = SseFramer()
    events: list[StreamEvent] = []
    for chunk in chunks:
        for sse_event in framer.feed(chunk):
            events.extend(decoder.feed(sse_event))
    framer.close()
    events.extend(decoder.close())
    return events


def accumulate(events: Iterable[StreamEvent]) -> TurnAccumulator:
    acc = TurnAccumulator()
    acc.extend(events)
    return acc


# =============================================================================
# Wire payload builders
# =============================================================================


def chat_chunk(
    *,
    content: str | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str | None = None,
    index: int = 0,
    **extra: Any,
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
        **extra,
    }


def chat_tool_delta(
    position: int,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    delta: dict[str, Any] = {"index": position, "function": function}
    if call_id is not None:
        delta["id"] = call_id
        delta["type"] = "function"
    return delta


def gemini_chunk(
    *parts: dict[str, Any],
    finish_reason: str | None = None,
    usage: dict[str, Any] | None = None,
) -> dict[str, Any]:
    candidate: dict[str, Any] = {"content": {"role": "model", "parts": list(parts)}}
    if finish_reason is not None:
        candidate["finishReason"] = finish_reason
    payload: dict[str, Any] = {"candidates": [candidate]}
    if usage is not None:
        payload["usageMetadata"] = usage
    return payload


# =============================================================================
# HTTP doubles
# =============================================================================


class ChunkedStream(httpx.AsyncByteStream):
    """Async response body that yields pre-split chunks, optionally failing."""

    def __init__(self, chunks: Sequence[bytes], *, fail_with: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._fail_with = fail_with
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._fail_with is not None:
            raise self._fail_with

    async def aclose(self) -> None:
        self.closed = True


def mock_client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
