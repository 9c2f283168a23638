"""Normalized stream events and the accumulator that folds them into items."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from castor.items import FunctionCall, Message, Reasoning

if TYPE_CHECKING:
    from collections.abc import Iterable

    from castor.errors import CastorError
    from castor.items import ConversationItem


@dataclass(frozen=True)
class TokenUsage:
    """Provider-agnostic token counts for one turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_tokens: int = 0


@dataclass(frozen=True)
class TextDelta:
    """Assistant text for choice *index*; a signed Gemini text part carries its signature."""

    text: str
    index: int = 0
    thought_signature: str | None = None


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDone:
    """Closes a reasoning segment, carrying its signature when one was issued."""

    thought_signature: str | None = None


@dataclass(frozen=True)
class FunctionCallStart:
    call_id: str
    name: str


@dataclass(frozen=True)
class FunctionCallArgumentDelta:
    call_id: str
    fragment: str


@dataclass(frozen=True)
class FunctionCallDone:
    call_id: str
    thought_signature: str | None = None


@dataclass(frozen=True)
class UsageReported:
    tokens: TokenUsage


@dataclass(frozen=True)
class Completed:
    response_id: str | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class Failed:
    """Terminal event for a turn that ended with an error mid-stream."""

    error: CastorError


StreamEvent = Union[
    TextDelta,
    ReasoningDelta,
    ReasoningDone,
    FunctionCallStart,
    FunctionCallArgumentDelta,
    FunctionCallDone,
    UsageReported,
    Completed,
    Failed,
]


@dataclass
class _PendingCall:
    name: str
    fragments: list[str] = field(default_factory=list)


class TurnAccumulator:
    """Fold a normalized event sequence into finalized conversation items.

    Only choice 0 text is collected. Function calls are emitted once their
    ``FunctionCallDone`` arrives, in completion order; calls still open when
    the stream ends are dropped.
    """

    def __init__(self) -> None:
        self._items: list[ConversationItem] = []
        self._text: list[str] = []
        self._text_signature: str | None = None
        self._reasoning: list[str] = []
        self._pending: dict[str, _PendingCall] = {}
        self.usage: TokenUsage | None = None
        self.completed: Completed | None = None
        self.error: CastorError | None = None

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            if event.index == 0:
                self._flush_reasoning(None)
                self._text.append(event.text)
                if event.thought_signature is not None:
                    self._text_signature = event.thought_signature
        elif isinstance(event, ReasoningDelta):
            self._flush_text()
            self._reasoning.append(event.text)
        elif isinstance(event, ReasoningDone):
            self._flush_reasoning(event.thought_signature)
        elif isinstance(event, FunctionCallStart):
            self._flush_text()
            self._flush_reasoning(None)
            self._pending[event.call_id] = _PendingCall(name=event.name)
        elif isinstance(event, FunctionCallArgumentDelta):
            pending = self._pending.get(event.call_id)
            if pending is not None:
                pending.fragments.append(event.fragment)
        elif isinstance(event, FunctionCallDone):
            pending = self._pending.pop(event.call_id, None)
            if pending is not None:
                self._items.append(
                    FunctionCall(
                        call_id=event.call_id,
                        name=pending.name,
                        arguments="".join(pending.fragments) or "{}",
                        thought_signature=event.thought_signature,
                    )
                )
        elif isinstance(event, UsageReported):
            self.usage = event.tokens
        elif isinstance(event, Completed):
            self.completed = event
        elif isinstance(event, Failed):
            self.error = event.error

    def extend(self, events: Iterable[StreamEvent]) -> None:
        for event in events:
            self.apply(event)

    def discard_pending(self) -> None:
        """Drop function calls that never finished (e.g. after cancellation)."""
        self._pending.clear()

    @property
    def items(self) -> list[ConversationItem]:
        """Finalized items, flushing any trailing text or reasoning."""
        self._flush_text()
        self._flush_reasoning(None)
        return list(self._items)

    def _flush_text(self) -> None:
        if self._text:
            self._items.append(
                Message(
                    role="assistant",
                    content="".join(self._text),
                    thought_signature=self._text_signature,
                )
            )
            self._text = []
            self._text_signature = None

    def _flush_reasoning(self, signature: str | None) -> None:
        if self._reasoning or signature is not None:
            self._items.append(
                Reasoning(content="".join(self._reasoning), thought_signature=signature)
            )
            self._reasoning = []
