"""Responses API request builder."""

from __future__ import annotations

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
    replay_signature,
    signature_bearing_call_ids,
)

if TYPE_CHECKING:
    from castor.families import ModelFamily
    from castor.items import Prompt
    from castor.providers.base import ProviderConfig
    from castor.requests._common import SignaturePolicy
    from castor.tools import ToolSpec


def _message_item(message: Message) -> dict[str, Any]:
    text_type = "output_text" if message.role == "assistant" else "input_text"
    content: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            content.append({"type": text_type, "text": part.text})
        elif isinstance(part, ImagePart):
            content.append({"type": "input_image", "image_url": part.image_url})
    return {"type": "message", "role": message.role, "content": content}


def _tool_to_responses(tool: ToolSpec) -> dict[str, Any]:
    if tool.kind == "freeform":
        custom: dict[str, Any] = {
            "type": "custom",
            "name": tool.name,
            "description": tool.description,
        }
        if tool.grammar:
            custom["format"] = {
                "type": "grammar",
                "syntax": "lark",
                "definition": tool.grammar,
            }
        return custom
    return {
        "type": "function",
        "name": tool.name,
        "description": tool.description,
        "strict": False,
        "parameters": tool.function_parameters(),
    }


def build_responses_request(
    prompt: Prompt,
    family: ModelFamily,
    provider: ProviderConfig,
    *,
    signature_policy: SignaturePolicy = "strict",
) -> dict[str, Any]:
    """Map a prompt to a Responses API request body.

    The Responses API has no native per-call signature field, so thinking
    families carry theirs on ``function_call`` items as the same
    ``extra_content.<vendor>.thought_signature`` extension the Chat builder
    uses.
    """
    check_signature_policy(signature_policy)
    items = prompt.input
    bearing = signature_bearing_call_ids(items)

    input_items: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, Message):
            input_items.append(_message_item(item))
        elif isinstance(item, FunctionCall):
            call_item: dict[str, Any] = {
                "type": "function_call",
                "call_id": item.call_id,
                "name": item.name,
                "arguments": item.arguments,
            }
            signature = replay_signature(
                item, family=family, bearing=bearing, policy=signature_policy
            )
            if signature is not None and family.emits_thought_signatures:
                call_item["extra_content"] = {
                    family.signature_vendor: {"thought_signature": signature}
                }
            input_items.append(call_item)
        elif isinstance(item, FunctionCallOutput):
            input_items.append(
                {
                    "type": "function_call_output",
                    "call_id": item.call_id,
                    "output": item.output,
                }
            )
        elif isinstance(item, Reasoning) and item.thought_signature is not None:
            summary = (
                [{"type": "summary_text", "text": item.content}] if item.content else []
            )
            input_items.append(
                {
                    "type": "reasoning",
                    "summary": summary,
                    "encrypted_content": item.thought_signature,
                }
            )

    body: dict[str, Any] = {
        "model": prompt.model,
        "instructions": prompt.instructions,
        "input": input_items,
        "stream": provider.streaming,
        "store": False,
    }
    if prompt.tools:
        body["tools"] = [_tool_to_responses(t) for t in prompt.tools]
        body["tool_choice"] = "auto"
        body["parallel_tool_calls"] = family.supports_parallel_tool_calls
    if family.supports_reasoning:
        body["reasoning"] = {"summary": "auto"}
        body["include"] = ["reasoning.encrypted_content"]
    return body
