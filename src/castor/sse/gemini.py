"""Gemini-native stream decoder.

Each ``data:`` payload is a complete ``GenerateContentResponse``. There is no
end sentinel, so a clean close after a whole event completes the turn.
"""

from __future__ import annotations

import json
import logging
from typing import Any
import uuid

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
from castor.sse._calls import DEFAULT_MAX_ARGUMENT_BYTES, CallTracker
from castor.sse.base import as_int, load_payload
from castor.sse.framing import SseEvent

logger = logging.getLogger(__name__)

SYNTHETIC_CALL_PREFIX = "gemini_call_"

_NORMAL_FINISH_REASONS = frozenset({"STOP", "FINISH_REASON_UNSPECIFIED"})
_BLOCKED_FINISH_REASONS = frozenset(
    {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}
)


def parse_gemini_usage(usage: dict[str, Any]) -> TokenUsage:
    return TokenUsage(
        input_tokens=as_int(usage.get("promptTokenCount")),
        output_tokens=as_int(usage.get("candidatesTokenCount")),
        total_tokens=as_int(usage.get("totalTokenCount")),
        cached_input_tokens=as_int(usage.get("cachedContentTokenCount")),
        reasoning_tokens=as_int(usage.get("thoughtsTokenCount")),
    )


def _part_signature(part: dict[str, Any], call: dict[str, Any] | None = None) -> str | None:
    # The signature is a sibling of the part's payload; some gateways nest it.
    for source in (part, call or {}):
        for key in ("thoughtSignature", "thought_signature"):
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return None


class GeminiDecoder:
    """Decode Gemini ``streamGenerateContent?alt=sse`` payloads."""

    def __init__(
        self,
        *,
        max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES,
        provider: str | None = None,
    ) -> None:
        self._calls = CallTracker(max_argument_bytes=max_argument_bytes)
        self._provider = provider
        # Synthetic ids carry a per-turn tag so they stay unique across turns.
        self._turn_tag = uuid.uuid4().hex[:8]
        self._synthetic_ids = 0
        self._usage: TokenUsage | None = None
        self._response_id: str | None = None
        self._finish_reason: str | None = None
        self._seen_payload = False
        self._deferred: UpstreamError | None = None
        self._done = False

    def feed(self, event: SseEvent) -> list[StreamEvent]:
        self._raise_deferred()
        if self._done:
            return []
        data = event.data.strip()
        if not data:
            return []
        return self._handle(load_payload(data))

    def close(self) -> list[StreamEvent]:
        self._raise_deferred()
        if self._done:
            return []
        if not self._seen_payload:
            raise ProtocolError("gemini stream closed before any response")
        events = self._calls.done_all()
        if self._usage is not None:
            events.append(UsageReported(tokens=self._usage))
        events.append(
            Completed(response_id=self._response_id, finish_reason=self._finish_reason)
        )
        self._done = True
        return events

    def decode_body(self, payload: Any) -> list[StreamEvent]:
        # generateContent returns one object; some proxies return the streamed array.
        chunks = payload if isinstance(payload, list) else [payload]
        events: list[StreamEvent] = []
        for chunk in chunks:
            if not isinstance(chunk, dict):
                raise ProtocolError("gemini response body is not a JSON object")
            events.extend(self._handle(chunk))
        events.extend(self.close())
        return events

    def discard(self) -> None:
        self._calls.discard()

    def _handle(self, payload: dict[str, Any]) -> list[StreamEvent]:
        self._seen_payload = True
        if payload.get("error"):
            self.discard()
            raise upstream_error_from_payload(payload, provider=self._provider)

        feedback = payload.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            self.discard()
            raise ContentFilteredError(
                f"prompt blocked: {feedback['blockReason']}",
                retryable=False,
                provider=self._provider,
                phase="stream",
            )

        response_id = payload.get("responseId")
        if isinstance(response_id, str) and response_id:
            self._response_id = response_id
        usage = payload.get("usageMetadata")
        if isinstance(usage, dict):
            self._usage = parse_gemini_usage(usage)

        events: list[StreamEvent] = []
        candidates = payload.get("candidates") or []
        if not isinstance(candidates, list):
            raise ProtocolError("gemini 'candidates' is not a list")
        for position, candidate in enumerate(candidates):
            if not isinstance(candidate, dict):
                raise ProtocolError("gemini candidate is not an object")
            index = candidate.get("index", position)
            content = candidate.get("content") or {}
            parts = (content.get("parts") or []) if isinstance(content, dict) else []
            for part in parts:
                if not isinstance(part, dict):
                    raise ProtocolError("gemini content part is not an object")
                events.extend(self._part(part, as_int(index)))
            finish_reason = candidate.get("finishReason")
            if isinstance(finish_reason, str) and finish_reason:
                error = self._finish_error(finish_reason)
                if error is not None and self._deferred is None:
                    self._deferred = error
        if self._deferred is not None:
            self.discard()
            if not events:
                self._raise_deferred()
        return events

    def _raise_deferred(self) -> None:
        # Parts decoded alongside a terminal finishReason are delivered first.
        error, self._deferred = self._deferred, None
        if error is not None:
            self._done = True
            raise error

    def _part(self, part: dict[str, Any], index: int) -> list[StreamEvent]:
        call = part.get("functionCall")
        if isinstance(call, dict):
            return self._function_call(part, call)

        text = part.get("text")
        signature = _part_signature(part)
        events: list[StreamEvent] = []
        if part.get("thought") is True:
            if isinstance(text, str) and text:
                events.append(ReasoningDelta(text=text))
            if signature is not None:
                events.append(ReasoningDone(thought_signature=signature))
            return events
        if not isinstance(text, str):
            text = ""
        if text or signature is not None:
            events.append(TextDelta(text=text, index=index, thought_signature=signature))
        return events

    def _function_call(self, part: dict[str, Any], call: dict[str, Any]) -> list[StreamEvent]:
        name = call.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError("gemini functionCall without a name")
        call_id = call.get("id")
        if not isinstance(call_id, str) or not call_id:
            self._synthetic_ids += 1
            call_id = f"{SYNTHETIC_CALL_PREFIX}{self._turn_tag}_{self._synthetic_ids}"
        args = call.get("args")
        arguments = json.dumps(args if isinstance(args, dict) else {})

        events = self._calls.start(call_id, name)
        events.extend(self._calls.fragment(call_id, arguments))
        events.extend(self._calls.done(call_id, _part_signature(part, call)))
        return events

    def _finish_error(self, finish_reason: str) -> UpstreamError | None:
        self._finish_reason = finish_reason
        if finish_reason in _NORMAL_FINISH_REASONS:
            return None
        if finish_reason == "MAX_TOKENS":
            return ContextWindowExceededError(
                "gemini stopped: MAX_TOKENS",
                hint="Shorten the conversation or raise maxOutputTokens.",
                retryable=False,
                provider=self._provider,
                phase="stream",
            )
        if finish_reason in _BLOCKED_FINISH_REASONS:
            return ContentFilteredError(
                f"gemini response blocked: {finish_reason}",
                retryable=False,
                provider=self._provider,
                phase="stream",
            )
        logger.warning("Gemini finished with reason %s", finish_reason)
        return None
