"""Chat Completions stream decoder."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from castor.errors import ProtocolError, ResponseTooLarge
from castor.events import (
    Completed,
    ReasoningDelta,
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

DONE_SENTINEL = "[DONE]"


@dataclass
class _Slot:
    """A tool call identified by (choice index, position) until it has an id."""

    call_id: str | None = None
    name: str | None = None
    held: list[str] = field(default_factory=list)
    held_bytes: int = 0
    signature: str | None = None
    started: bool = False


def parse_chat_usage(usage: dict[str, Any]) -> TokenUsage:
    prompt_details = usage.get("prompt_tokens_details")
    completion_details = usage.get("completion_tokens_details")
    return TokenUsage(
        input_tokens=as_int(usage.get("prompt_tokens")),
        output_tokens=as_int(usage.get("completion_tokens")),
        total_tokens=as_int(usage.get("total_tokens")),
        cached_input_tokens=(
            as_int(prompt_details.get("cached_tokens"))
            if isinstance(prompt_details, dict)
            else 0
        ),
        reasoning_tokens=(
            as_int(completion_details.get("reasoning_tokens"))
            if isinstance(completion_details, dict)
            else 0
        ),
    )


class ChatDecoder:
    """Decode Chat Completions ``data:`` deltas.

    Tool-call argument fragments are keyed by call position within a choice.
    The literal ``[DONE]`` ends the stream.
    """

    def __init__(
        self,
        *,
        max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES,
        provider: str | None = None,
    ) -> None:
        self._calls = CallTracker(max_argument_bytes=max_argument_bytes)
        self._provider = provider
        self._slots: dict[int, dict[int, _Slot]] = {}
        self._response_id: str | None = None
        self._finish_reason: str | None = None
        self._done = False

    def feed(self, event: SseEvent) -> list[StreamEvent]:
        if self._done:
            return []
        data = event.data.strip()
        if not data:
            return []
        if data == DONE_SENTINEL:
            return self._complete()
        return self._handle_chunk(load_payload(data))

    def close(self) -> list[StreamEvent]:
        if self._done:
            return []
        if self._finish_reason is None:
            self.discard()
            raise ProtocolError("chat stream closed before [DONE]")
        logger.debug("chat stream closed without [DONE] after finish_reason")
        return self._complete()

    def decode_body(self, payload: Any) -> list[StreamEvent]:
        if not isinstance(payload, dict):
            raise ProtocolError("chat completion body is not a JSON object")
        choices = []
        for choice in payload.get("choices") or []:
            if not isinstance(choice, dict):
                raise ProtocolError("chat completion choice is not an object")
            message = dict(choice.get("message") or {})
            tool_calls = message.get("tool_calls") or []
            message["tool_calls"] = [
                {**tc, "index": n} for n, tc in enumerate(tool_calls) if isinstance(tc, dict)
            ]
            choices.append(
                {
                    "index": choice.get("index", 0),
                    "delta": message,
                    "finish_reason": choice.get("finish_reason") or "stop",
                }
            )
        chunk = {**payload, "choices": choices}
        events = self._handle_chunk(chunk)
        events.extend(self._complete())
        return events

    def discard(self) -> None:
        self._calls.discard()
        self._slots.clear()

    def _handle_chunk(self, payload: dict[str, Any]) -> list[StreamEvent]:
        if payload.get("error"):
            self.discard()
            raise upstream_error_from_payload(payload, provider=self._provider)
        response_id = payload.get("id")
        if isinstance(response_id, str) and response_id:
            self._response_id = response_id

        events: list[StreamEvent] = []
        choices = payload.get("choices") or []
        if not isinstance(choices, list):
            raise ProtocolError("chat chunk 'choices' is not a list")
        for choice in choices:
            if not isinstance(choice, dict):
                raise ProtocolError("chat chunk choice is not an object")
            index = as_int(choice.get("index"))
            delta = choice.get("delta") or {}
            if not isinstance(delta, dict):
                raise ProtocolError("chat chunk delta is not an object")

            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                events.append(ReasoningDelta(text=reasoning))
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TextDelta(text=content, index=index))
            tool_calls = delta.get("tool_calls") or []
            if not isinstance(tool_calls, list):
                raise ProtocolError("chat chunk 'tool_calls' is not a list")
            for tool_call in tool_calls:
                if not isinstance(tool_call, dict):
                    raise ProtocolError("chat tool call delta is not an object")
                events.extend(self._tool_call_delta(index, tool_call))

            finish_reason = choice.get("finish_reason")
            if isinstance(finish_reason, str) and finish_reason:
                self._finish_reason = finish_reason
                events.extend(self._finish_choice(index))

        usage = payload.get("usage")
        if isinstance(usage, dict):
            events.append(UsageReported(tokens=parse_chat_usage(usage)))
        return events

    def _slot_for(self, choice: int, tool_call: dict[str, Any]) -> tuple[int, _Slot]:
        slots = self._slots.setdefault(choice, {})
        position = tool_call.get("index")
        if isinstance(position, int) and not isinstance(position, bool):
            return position, slots.setdefault(position, _Slot())
        # Some gateways omit `index`; fall back to matching by id.
        call_id = tool_call.get("id")
        for pos, slot in slots.items():
            if call_id and slot.call_id == call_id:
                return pos, slot
        if not call_id and slots:
            pos = max(slots)
            return pos, slots[pos]
        pos = max(slots) + 1 if slots else 0
        return pos, slots.setdefault(pos, _Slot())

    def _tool_call_delta(self, choice: int, tool_call: dict[str, Any]) -> list[StreamEvent]:
        _, slot = self._slot_for(choice, tool_call)
        function = tool_call.get("function") or {}
        if not isinstance(function, dict):
            raise ProtocolError("chat tool call 'function' is not an object")

        call_id = tool_call.get("id")
        if slot.call_id is None and isinstance(call_id, str) and call_id:
            slot.call_id = call_id
        name = function.get("name")
        if slot.name is None and isinstance(name, str) and name:
            slot.name = name

        events: list[StreamEvent] = []
        if not slot.started and slot.call_id is not None and slot.name is not None:
            events.extend(self._start(slot))

        signature = extract_vendor_signature(tool_call)
        if signature is not None:
            slot.signature = signature

        arguments = function.get("arguments")
        if isinstance(arguments, str) and arguments:
            if slot.started and slot.call_id is not None:
                events.extend(self._calls.fragment(slot.call_id, arguments))
            else:
                self._hold(slot, arguments)
        return events

    def _hold(self, slot: _Slot, fragment: str) -> None:
        slot.held_bytes += len(fragment.encode("utf-8"))
        if slot.held_bytes > self._calls.max_argument_bytes:
            self.discard()
            raise ResponseTooLarge(
                f"tool call arguments exceed {self._calls.max_argument_bytes} bytes",
                limit=self._calls.max_argument_bytes,
            )
        slot.held.append(fragment)

    def _start(self, slot: _Slot) -> list[StreamEvent]:
        assert slot.call_id is not None and slot.name is not None  # noqa: S101
        events = self._calls.start(slot.call_id, slot.name)
        slot.started = True
        for fragment in slot.held:
            events.extend(self._calls.fragment(slot.call_id, fragment))
        slot.held = []
        slot.held_bytes = 0
        return events

    def _finish_choice(self, choice: int) -> list[StreamEvent]:
        slots = self._slots.pop(choice, {})
        events: list[StreamEvent] = []
        for position in sorted(slots):
            slot = slots[position]
            if not slot.started:
                if slot.name is None:
                    self.discard()
                    raise ProtocolError(f"tool call at position {position} has no name")
                if slot.call_id is None:
                    slot.call_id = f"call_{choice}_{position}"
                events.extend(self._start(slot))
            assert slot.call_id is not None  # noqa: S101
            events.extend(self._calls.done(slot.call_id, slot.signature))
        return events

    def _complete(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for choice in sorted(self._slots):
            events.extend(self._finish_choice(choice))
        self._done = True
        events.append(
            Completed(response_id=self._response_id, finish_reason=self._finish_reason)
        )
        return events
