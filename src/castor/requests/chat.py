"""Chat Completions request builder."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from castor.items import FunctionCall, FunctionCallOutput, ImagePart, Message, TextPart
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


def _message_content(message: Message) -> str | list[dict[str, Any]]:
    if not message.has_images:
        return message.text
    content: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            if part.text:
                content.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            content.append({"type": "image_url", "image_url": {"url": part.image_url}})
    return content


def _tool_to_chat(tool: ToolSpec) -> dict[str, Any]:
    function: dict[str, Any] = {"name": tool.name, "parameters": tool.function_parameters()}
    if tool.description:
        function["description"] = tool.description
    return {"type": "function", "function": function}


def build_chat_request(
    prompt: Prompt,
    family: ModelFamily,
    provider: ProviderConfig,
    *,
    signature_policy: SignaturePolicy = "strict",
) -> dict[str, Any]:
    """Map a prompt to a Chat Completions request body.

    Thinking families get their signatures as the vendor extension
    ``tool_calls[].extra_content.<vendor>.thought_signature`` so models
    behind OpenAI-compatible gateways still receive them.
    """
    check_signature_policy(signature_policy)
    items = prompt.input
    bearing = signature_bearing_call_ids(items)

    messages: list[dict[str, Any]] = []
    if prompt.instructions:
        messages.append({"role": "system", "content": prompt.instructions})

    # Message dict currently collecting tool_calls, if the last item was a call.
    open_calls: dict[str, Any] | None = None

    for item in items:
        if isinstance(item, Message):
            open_calls = None
            messages.append({"role": item.role, "content": _message_content(item)})
        elif isinstance(item, FunctionCall):
            tool_call: dict[str, Any] = {
                "id": item.call_id,
                "type": "function",
                "function": {"name": item.name, "arguments": item.arguments},
            }
            signature = replay_signature(
                item, family=family, bearing=bearing, policy=signature_policy
            )
            if signature is not None and family.emits_thought_signatures:
                tool_call["extra_content"] = {
                    family.signature_vendor: {"thought_signature": signature}
                }
            if open_calls is None:
                last = messages[-1] if messages else None
                if (
                    last is not None
                    and last["role"] == "assistant"
                    and "tool_calls" not in last
                ):
                    open_calls = last
                else:
                    open_calls = {"role": "assistant", "content": None}
                    messages.append(open_calls)
                open_calls["tool_calls"] = []
            open_calls["tool_calls"].append(tool_call)
        elif isinstance(item, FunctionCallOutput):
            open_calls = None
            messages.append(
                {"role": "tool", "tool_call_id": item.call_id, "content": item.output}
            )
        # Reasoning is not replayed over Chat Completions.

    body: dict[str, Any] = {
        "model": prompt.model,
        "messages": messages,
        "stream": provider.streaming,
    }
    if provider.streaming:
        body["stream_options"] = {"include_usage": True}
    if prompt.tools:
        body["tools"] = [_tool_to_chat(t) for t in prompt.tools]
        body["tool_choice"] = "auto"
        body["parallel_tool_calls"] = family.supports_parallel_tool_calls
    return body
