"""Helpers shared by the request builders."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Literal

from castor.errors import ValidationError
from castor.items import FunctionCall, FunctionCallOutput, Message

if TYPE_CHECKING:
    from collections.abc import Sequence

    from castor.families import ModelFamily
    from castor.items import ConversationItem

logger = logging.getLogger(__name__)

SignaturePolicy = Literal["strict", "placeholder", "omit"]

SIGNATURE_POLICIES: frozenset[str] = frozenset({"strict", "placeholder", "omit"})

#: Token Gemini documents for replaying calls whose signature was lost.
PLACEHOLDER_SIGNATURE = "skip_thought_signature_validator"


def signature_bearing_call_ids(items: Sequence[ConversationItem]) -> frozenset[str]:
    """Return call ids that must carry a signature on replay.

    These are the first call of each run of consecutive function calls after
    the last user message. Parallel calls only carry a signature on the
    first call of their step.
    """
    start = 0
    for idx, item in enumerate(items):
        if isinstance(item, Message) and item.role == "user":
            start = idx + 1

    bearing: set[str] = set()
    in_run = False
    for item in items[start:]:
        if isinstance(item, FunctionCall):
            if not in_run:
                bearing.add(item.call_id)
            in_run = True
        elif isinstance(item, (Message, FunctionCallOutput)):
            in_run = False
    return frozenset(bearing)


def replay_signature(
    call: FunctionCall,
    *,
    family: ModelFamily,
    bearing: frozenset[str],
    policy: SignaturePolicy,
) -> str | None:
    """Return the signature to send with *call*, enforcing *policy*."""
    if call.thought_signature is not None:
        return call.thought_signature
    if not family.requires_thought_signatures or call.call_id not in bearing:
        return None
    if policy == "strict":
        raise ValidationError(
            f"Function call {call.call_id!r} ({call.name}) is missing the thought "
            f"signature required by {family.family}",
            hint="Replay the call exactly as received, or use signature_policy='placeholder'.",
        )
    if policy == "placeholder":
        logger.warning(
            "Replaying call %s without a thought signature; sending placeholder",
            call.call_id,
        )
        return PLACEHOLDER_SIGNATURE
    logger.warning(
        "Replaying call %s without a thought signature; provider may reject it",
        call.call_id,
    )
    return None


def check_signature_policy(policy: str) -> None:
    if policy not in SIGNATURE_POLICIES:
        raise ValidationError(
            f"Unknown signature policy: {policy!r}",
            hint="Use one of: strict, placeholder, omit.",
        )


def parse_arguments(arguments: str) -> dict[str, Any]:
    """Parse a JSON argument string; anything but a JSON object becomes {}."""
    if not arguments:
        return {}
    try:
        value = json.loads(arguments)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def split_data_url(url: str) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<data>`` into (mime_type, data)."""
    if not url.startswith("data:"):
        return None
    header, sep, data = url.partition(",")
    if not sep:
        return None
    mime_type = header[len("data:") :].split(";", 1)[0] or "image/png"
    return mime_type, data
