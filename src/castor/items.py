"""Conversation model: items, the append-only history, and turn prompts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Union

from castor.errors import ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from castor.families import ModelFamily
    from castor.tools import ToolSpec

Role = Literal["user", "assistant", "system", "developer"]

_ROLES: frozenset[str] = frozenset({"user", "assistant", "system", "developer"})


@dataclass(frozen=True)
class TextPart:
    """Plain text inside a message."""

    text: str


@dataclass(frozen=True)
class ImagePart:
    """An image referenced by a ``data:`` URL or a remote URL."""

    image_url: str


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class Message:
    """A user, assistant, or system message.

    ``thought_signature`` is set on assistant text when the provider signed it
    and is echoed on that text when the message is replayed.
    """

    role: Role
    content: str | tuple[ContentPart, ...] = ""
    thought_signature: str | None = None

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValidationError(
                f"Unknown message role: {self.role!r}",
                hint="Use one of: user, assistant, system, developer.",
            )
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))

    @property
    def parts(self) -> tuple[ContentPart, ...]:
        """Content normalized to a tuple of parts."""
        if isinstance(self.content, str):
            return (TextPart(self.content),) if self.content else ()
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def has_images(self) -> bool:
        return any(isinstance(p, ImagePart) for p in self.parts)


@dataclass(frozen=True)
class FunctionCall:
    """A tool call requested by the model.

    ``thought_signature`` is opaque provider state. It is never inspected,
    only echoed back on the next request that includes this call.
    """

    call_id: str
    name: str
    arguments: str
    thought_signature: str | None = None


@dataclass(frozen=True)
class FunctionCallOutput:
    """The result of running a tool call."""

    call_id: str
    output: str
    success: bool = True


@dataclass(frozen=True)
class Reasoning:
    """Model reasoning text, optionally bound to a thought signature."""

    content: str
    thought_signature: str | None = None


ConversationItem = Union[Message, FunctionCall, FunctionCallOutput, Reasoning]

_ITEM_TYPES = (Message, FunctionCall, FunctionCallOutput, Reasoning)


class Conversation:
    """Ordered, append-only history of conversation items."""

    def __init__(self, items: Iterable[ConversationItem] = ()) -> None:
        self._items: list[ConversationItem] = []
        self.extend(items)

    def append(self, item: ConversationItem) -> None:
        if not isinstance(item, _ITEM_TYPES):
            raise ValidationError(
                f"Not a conversation item: {type(item).__name__}",
                hint="Append Message, FunctionCall, FunctionCallOutput, or Reasoning.",
            )
        self._items.append(item)

    def extend(self, items: Iterable[ConversationItem]) -> None:
        for item in items:
            self.append(item)

    @property
    def items(self) -> tuple[ConversationItem, ...]:
        """Immutable snapshot of the history."""
        return tuple(self._items)

    def __iter__(self) -> Iterator[ConversationItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Conversation(items={len(self._items)})"


@dataclass(frozen=True)
class Prompt:
    """Everything a request builder needs for one turn."""

    model: str
    input: tuple[ConversationItem, ...]
    instructions: str = ""
    tools: tuple[ToolSpec, ...] = field(default_factory=tuple)

    @classmethod
    def for_family(
        cls,
        conversation: Conversation | Iterable[ConversationItem],
        family: ModelFamily,
        *,
        model: str | None = None,
        extra_tools: Iterable[ToolSpec] = (),
    ) -> Prompt:
        """Build a prompt whose instructions and tools come from *family*.

        The wire API plays no part here, so a model keeps identical tool
        configuration whichever builder formats the request.
        """
        from castor.tools import tools_for_family

        if isinstance(conversation, Conversation):
            snapshot = conversation.items
        else:
            snapshot = tuple(conversation)
        return cls(
            model=model or family.slug,
            input=snapshot,
            instructions=family.base_instructions,
            tools=tools_for_family(family, extra=extra_tools),
        )
