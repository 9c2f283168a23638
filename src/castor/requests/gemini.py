"""Gemini-native ``generateContent`` request builder.

Converts conversation items to ``contents[].parts[]``. Thought signatures ride
as a sibling ``thoughtSignature`` field on the ``functionCall`` part they were
issued with.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from castor.items import (
    FunctionCall,
    FunctionCallOutput,
    ImagePart,
    Message,
    Reasoning,
    TextPart,
)
from castor.requests._common import (
    check_signature_policy,
    parse_arguments,
    replay_signature,
    signature_bearing_call_ids,
    split_data_url,
)

if TYPE_CHECKING:
    from castor.families import ModelFamily
    from castor.items import Prompt
    from castor.providers.base import ProviderConfig
    from castor.requests._common import SignaturePolicy
    from castor.tools import ToolSpec

logger = logging.getLogger(__name__)

_REMOTE_IMAGE_MIME = "image/jpeg"


def map_role(role: str) -> str:
    """Map a conversation role to a Gemini content role."""
    return "model" if role == "assistant" else "user"


def _message_parts(message: Message) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            if part.text:
                parts.append({"text": part.text})
        elif isinstance(part, ImagePart):
            inline = split_data_url(part.image_url)
            if inline is not None:
                mime_type, data = inline
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
            elif part.image_url.startswith("data:"):
                logger.warning("Dropping malformed data URL image part")
            else:
                parts.append(
                    {"fileData": {"fileUri": part.image_url, "mimeType": _REMOTE_IMAGE_MIME}}
                )
    if message.thought_signature is not None:
        texts = [p for p in parts if "text" in p]
        if texts:
            texts[-1]["thoughtSignature"] = message.thought_signature
        else:
            parts.append({"text": "", "thoughtSignature": message.thought_signature})
    return parts


def _function_declaration(tool: ToolSpec) -> dict[str, Any]:
    decl: dict[str, Any] = {"name": tool.name, "parameters": tool.function_parameters()}
    if tool.description:
        decl["description"] = tool.description
    return decl


class _Contents:
    """Accumulates contents.

    A model step (reasoning plus its parallel calls) shares one ``model``
    content and its outputs share one ``user`` content.
    """

    _MERGEABLE = frozenset({"reasoning", "call", "response"})

    def __init__(self) -> None:
        self.contents: list[dict[str, Any]] = []
        self._last_kind: str | None = None

    def add(self, role: str, parts: list[dict[str, Any]], *, kind: str) -> None:
        if not parts:
            return
        if (
            kind in self._MERGEABLE
            and self._last_kind in self._MERGEABLE
            and self.contents[-1]["role"] == role
        ):
            self.contents[-1]["parts"].extend(parts)
            self._last_kind = kind
            return
        self.contents.append({"role": role, "parts": parts})
        self._last_kind = kind


def build_gemini_request(
    prompt: Prompt,
    family: ModelFamily,
    provider: ProviderConfig,
    *,
    signature_policy: SignaturePolicy = "strict",
) -> dict[str, Any]:
    """Map a prompt to a Gemini ``generateContent`` request body."""
    _ = provider
    check_signature_policy(signature_policy)
    items = prompt.input
    bearing = signature_bearing_call_ids(items)
    # call_id -> name of the nearest preceding call with that id.
    names: dict[str, str] = {}

    system_texts: list[str] = [prompt.instructions] if prompt.instructions else []
    contents = _Contents()

    for item in items:
        if isinstance(item, Message):
            if item.role in {"system", "developer"}:
                if item.text:
                    system_texts.append(item.text)
                continue
            contents.add(map_role(item.role), _message_parts(item), kind="message")
        elif isinstance(item, FunctionCall):
            part: dict[str, Any] = {
                "functionCall": {
                    "name": item.name,
                    "args": parse_arguments(item.arguments),
                }
            }
            signature = replay_signature(
                item, family=family, bearing=bearing, policy=signature_policy
            )
            if signature is not None:
                part["thoughtSignature"] = signature
            names[item.call_id] = item.name
            contents.add("model", [part], kind="call")
        elif isinstance(item, FunctionCallOutput):
            name = names.get(item.call_id)
            if name is None:
                logger.warning(
                    "No function call matches output %s; sending name 'unknown'",
                    item.call_id,
                )
                name = "unknown"
            contents.add(
                "user",
                [{"functionResponse": {"name": name, "response": {"output": item.output}}}],
                kind="response",
            )
        elif isinstance(item, Reasoning) and item.thought_signature is not None:
            contents.add(
                "model",
                [
                    {
                        "text": item.content,
                        "thought": True,
                        "thoughtSignature": item.thought_signature,
                    }
                ],
                kind="reasoning",
            )

    body: dict[str, Any] = {"contents": contents.contents}
    if system_texts:
        body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}
    if prompt.tools:
        body["tools"] = [
            {"functionDeclarations": [_function_declaration(t) for t in prompt.tools]}
        ]
        body["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
    if family.supports_reasoning:
        body["generationConfig"] = {"thinkingConfig": {"includeThoughts": True}}
    return body
