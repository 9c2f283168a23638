"""Responses API stream decoder.

Every payload is a JSON object with a ``type`` field. Function-call argument
deltas are keyed by output item id and mapped back to the call id announced
in ``response.output_item.added``.
"""

from __future__ import annotations

import logging
from typing import Any

from castor.errors import (
    ContentFilteredError,
    ContextWindowExceededError,
    ProtocolError,
    UpstreamError,
)
from castor.events import (
    Completed,
    ReasoningDelta,
    ReasoningDone,
    StreamEvent,
    TextDelta,
    TokenUsage,
    UsageReported,
)
from castor.providers._errors import upstream_error_from_payload
from castor.sse._calls import (
    DEFAULT_MAX_ARGUMENT_BYTES,
    CallTracker,
    extract_vendor_signature,
)
from castor.sse.base import as_int, load_payload
from castor.sse.framing import SseEvent

logger = logging.getLogger(__name__)

_CALL_ITEM_TYPES = {"function_call": "arguments", "custom_tool_call": "input"}
_TEXT_DELTA_TYPES = frozenset({"response.output_text.delta"})
_REASONING_DELTA_TYPES = frozenset(
    {"response.reasoning_summary_text.delta", "response.reasoning_text.delta"}
)
_ARGUMENT_DELTA_TYPES = frozenset(
    {"response.function_call_arguments.delta", "response.custom_tool_call_input.delta"}
)


def parse_responses_usage(usage: dict[str, Any]) -> TokenUsage:
    input_details = usage.get("input_tokens_details")
    output_details = usage.get("output_tokens_details")
    return TokenUsage(
        input_tokens=as_int(usage.get("input_tokens")),
        output_tokens=as_int(usage.get("output_tokens")),
        total_tokens=as_int(usage.get("total_tokens")),
        cached_input_tokens=(
            as_int(input_details.get("cached_tokens"))
            if isinstance(input_details, dict)
            else 0
        ),
        reasoning_tokens=(
            as_int(output_details.get("reasoning_tokens"))
            if isinstance(output_details, dict)
            else 0
        ),
    )


def _incomplete_error(response: dict[str, Any], provider: str | None) -> UpstreamError:
    details = response.get("incomplete_details")
    reason = details.get("reason") if isinstance(details, dict) else None
    if reason == "max_output_tokens":
        return ContextWindowExceededError(
            "response incomplete: max_output_tokens reached",
            hint="Shorten the conversation or raise the output token limit.",
            retryable=False,
            provider=provider,
            phase="stream",
        )
    if reason == "content_filter":
        return ContentFilteredError(
            "response incomplete: blocked by content filter",
            retryable=False,
            provider=provider,
            phase="stream",
        )
    return UpstreamError(
        f"response incomplete: {reason or 'unknown reason'}",
        retryable=False,
        provider=provider,
        phase="stream",
    )


def _failed_error(response: dict[str, Any], provider: str | None) -> UpstreamError:
    error = response.get("error")
    if isinstance(error, dict) and error.get("code") == "context_length_exceeded":
        return ContextWindowExceededError(
            str(error.get("message") or "context window exceeded"),
            hint="Shorten the conversation before retrying.",
            retryable=False,
            provider=provider,
            phase="stream",
        )
    return upstream_error_from_payload({"error": error or "response failed"}, provider=provider)


class ResponsesDecoder:
    """Decode typed Responses API stream events."""

    def __init__(
        self,
        *,
        max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES,
        provider: str | None = None,
    ) -> None:
        self._calls = CallTracker(max_argument_bytes=max_argument_bytes)
        self._provider = provider
        self._item_calls: dict[str, str] = {}
        self._streamed_args: set[str] = set()
        self._response_id: str | None = None
        self._done = False

    def feed(self, event: SseEvent) -> list[StreamEvent]:
        if self._done:
            return []
        data = event.data.strip()
        if not data:
            return []
        payload = load_payload(data)
        kind = payload.get("type") or event.event
        try:
            return self._dispatch(kind, payload)
        except UpstreamError:
            self.discard()
            raise

    def close(self) -> list[StreamEvent]:
        if self._done:
            return []
        self.discard()
        raise ProtocolError("responses stream closed before response.completed")

    def decode_body(self, payload: Any) -> list[StreamEvent]:
        if not isinstance(payload, dict):
            raise ProtocolError("responses body is not a JSON object")
        if payload.get("error"):
            raise _failed_error(payload, self._provider)
        status = payload.get("status")
        if status == "incomplete":
            raise _incomplete_error(payload, self._provider)
        events: list[StreamEvent] = []
        for item in payload.get("output") or []:
            if not isinstance(item, dict):
                raise ProtocolError("responses output item is not an object")
            if item.get("type") == "message":
                for content in item.get("content") or []:
                    text = content.get("text") if isinstance(content, dict) else None
                    if isinstance(text, str) and text:
                        events.append(TextDelta(text=text))
                continue
            if item.get("type") == "reasoning":
                for summary in item.get("summary") or []:
                    text = summary.get("text") if isinstance(summary, dict) else None
                    if isinstance(text, str) and text:
                        events.append(ReasoningDelta(text=text))
            events.extend(self._item_done(item))
        events.extend(self._completed(payload))
        return events

    def discard(self) -> None:
        self._calls.discard()
        self._item_calls.clear()
        self._streamed_args.clear()

    def _dispatch(self, kind: Any, payload: dict[str, Any]) -> list[StreamEvent]:
        if kind in _TEXT_DELTA_TYPES:
            delta = payload.get("delta")
            return [TextDelta(text=delta)] if isinstance(delta, str) and delta else []
        if kind in _REASONING_DELTA_TYPES:
            delta = payload.get("delta")
            return [ReasoningDelta(text=delta)] if isinstance(delta, str) and delta else []
        if kind in _ARGUMENT_DELTA_TYPES:
            return self._argument_delta(payload)
        if kind == "response.output_item.added":
            return self._item_added(self._item(payload))
        if kind == "response.output_item.done":
            return self._item_done(self._item(payload))
        if kind == "response.created":
            self._capture_id(payload.get("response"))
            return []
        if kind == "response.completed":
            response = payload.get("response")
            if not isinstance(response, dict):
                raise ProtocolError("response.completed without a response object")
            return self._completed(response)
        if kind == "response.failed":
            response = payload.get("response")
            raise _failed_error(response if isinstance(response, dict) else {}, self._provider)
        if kind == "response.incomplete":
            response = payload.get("response")
            raise _incomplete_error(
                response if isinstance(response, dict) else {}, self._provider
            )
        if kind == "error":
            raise upstream_error_from_payload(payload, provider=self._provider)
        logger.debug("Skipping responses event type %s", kind)
        return []

    @staticmethod
    def _item(payload: dict[str, Any]) -> dict[str, Any]:
        item = payload.get("item")
        if not isinstance(item, dict):
            raise ProtocolError(f"{payload.get('type')} without an item object")
        return item

    def _capture_id(self, response: Any) -> None:
        if isinstance(response, dict):
            response_id = response.get("id")
            if isinstance(response_id, str) and response_id:
                self._response_id = response_id

    def _call_identity(self, item: dict[str, Any]) -> tuple[str, str]:
        call_id = item.get("call_id") or item.get("id")
        name = item.get("name")
        if not isinstance(call_id, str) or not call_id:
            raise ProtocolError("function call item without a call_id")
        if not isinstance(name, str) or not name:
            raise ProtocolError(f"function call {call_id!r} without a name")
        return call_id, name

    def _item_added(self, item: dict[str, Any]) -> list[StreamEvent]:
        if item.get("type") not in _CALL_ITEM_TYPES:
            return []
        call_id, name = self._call_identity(item)
        item_id = item.get("id")
        if isinstance(item_id, str) and item_id:
            self._item_calls[item_id] = call_id
        return self._calls.start(call_id, name)

    def _argument_delta(self, payload: dict[str, Any]) -> list[StreamEvent]:
        item_id = payload.get("item_id")
        call_id = self._item_calls.get(item_id) if isinstance(item_id, str) else None
        if call_id is None:
            raise ProtocolError(f"argument delta for unknown item: {item_id!r}")
        delta = payload.get("delta")
        if not isinstance(delta, str) or not delta:
            return []
        self._streamed_args.add(call_id)
        return self._calls.fragment(call_id, delta)

    def _item_done(self, item: dict[str, Any]) -> list[StreamEvent]:
        item_type = item.get("type")
        if item_type == "reasoning":
            signature = item.get("encrypted_content")
            if not isinstance(signature, str) or not signature:
                signature = None
            return [ReasoningDone(thought_signature=signature)]
        if item_type not in _CALL_ITEM_TYPES:
            return []

        call_id, name = self._call_identity(item)
        events: list[StreamEvent] = []
        if not self._calls.is_open(call_id):
            events.extend(self._calls.start(call_id, name))
        if call_id not in self._streamed_args:
            arguments = item.get(_CALL_ITEM_TYPES[item_type])
            if isinstance(arguments, str) and arguments:
                events.extend(self._calls.fragment(call_id, arguments))
        self._streamed_args.discard(call_id)
        events.extend(self._calls.done(call_id, extract_vendor_signature(item)))
        return events

    def _completed(self, response: dict[str, Any]) -> list[StreamEvent]:
        self._capture_id(response)
        events = self._calls.done_all()
        usage = response.get("usage")
        if isinstance(usage, dict):
            events.append(UsageReported(tokens=parse_responses_usage(usage)))
        status = response.get("status")
        events.append(
            Completed(
                response_id=self._response_id,
                finish_reason=status if isinstance(status, str) else None,
            )
        )
        self._done = True
        return events
