"""Model family registry.

A family groups models that must receive identical system instructions and
tool schemas, whichever wire API carries the request.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class ShellType(Enum):
    """How the shell tool takes its command."""

    SHELL_COMMAND = "shell_command"  # one command string
    EXEC = "exec"  # argv array


class ApplyPatchToolType(Enum):
    """Shape of the patch-apply tool."""

    FREEFORM = "freeform"  # grammar-constrained custom tool
    STRUCTURED = "structured"  # JSON function with an `input` string


BASE_INSTRUCTIONS = (
    "You are a coding agent running in a terminal. Use the provided tools to "
    "inspect and change the workspace. Keep answers concise and state what "
    "you changed."
)

APPLY_PATCH_INSTRUCTIONS = (
    "Edit files with the apply_patch tool. A patch starts with "
    "'*** Begin Patch' and ends with '*** End Patch'; each file section is "
    "'*** Add File: <path>', '*** Delete File: <path>' or "
    "'*** Update File: <path>' followed by hunks."
)


@dataclass(frozen=True)
class ModelFamily:
    """Per model-line policy, independent of wire format."""

    slug: str
    family: str
    shell_type: ShellType = ShellType.EXEC
    apply_patch_tool_type: ApplyPatchToolType | None = None
    supports_parallel_tool_calls: bool = False
    supports_reasoning: bool = False
    #: Provider issues thought signatures on function calls.
    emits_thought_signatures: bool = False
    #: Replaying a call without its signature is rejected by the provider.
    requires_thought_signatures: bool = False
    #: Vendor key used for `extra_content.<vendor>` on Chat Completions tool calls.
    signature_vendor: str = "google"
    base_instructions: str = BASE_INSTRUCTIONS


# Pure data: prefix -> family template. Longest prefix wins.
_FAMILIES: dict[str, ModelFamily] = {
    "codex-": ModelFamily(
        slug="codex-",
        family="codex",
        shell_type=ShellType.SHELL_COMMAND,
        apply_patch_tool_type=ApplyPatchToolType.FREEFORM,
        supports_parallel_tool_calls=True,
        supports_reasoning=True,
    ),
    "gpt-5-codex": ModelFamily(
        slug="gpt-5-codex",
        family="gpt-5-codex",
        shell_type=ShellType.SHELL_COMMAND,
        apply_patch_tool_type=ApplyPatchToolType.FREEFORM,
        supports_parallel_tool_calls=True,
        supports_reasoning=True,
    ),
    "gpt-5": ModelFamily(
        slug="gpt-5",
        family="gpt-5",
        apply_patch_tool_type=ApplyPatchToolType.FREEFORM,
        supports_parallel_tool_calls=True,
        supports_reasoning=True,
    ),
    "gpt-4.1": ModelFamily(
        slug="gpt-4.1",
        family="gpt-4.1",
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_parallel_tool_calls=True,
    ),
    "gpt-4o": ModelFamily(
        slug="gpt-4o",
        family="gpt-4o",
        supports_parallel_tool_calls=True,
    ),
    "o3": ModelFamily(
        slug="o3",
        family="o3",
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_reasoning=True,
    ),
    "o4-mini": ModelFamily(
        slug="o4-mini",
        family="o4-mini",
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_reasoning=True,
    ),
    "gemini-3": ModelFamily(
        slug="gemini-3",
        family="gemini-3",
        shell_type=ShellType.SHELL_COMMAND,
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_parallel_tool_calls=True,
        supports_reasoning=True,
        emits_thought_signatures=True,
        requires_thought_signatures=True,
    ),
    "gemini-2.5": ModelFamily(
        slug="gemini-2.5",
        family="gemini-2.5",
        shell_type=ShellType.SHELL_COMMAND,
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_parallel_tool_calls=True,
        supports_reasoning=True,
        emits_thought_signatures=True,
    ),
    "gemini-2.0": ModelFamily(
        slug="gemini-2.0",
        family="gemini-2.0",
        shell_type=ShellType.SHELL_COMMAND,
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_parallel_tool_calls=True,
    ),
    "claude": ModelFamily(
        slug="claude",
        family="claude",
        apply_patch_tool_type=ApplyPatchToolType.STRUCTURED,
        supports_parallel_tool_calls=True,
        supports_reasoning=True,
    ),
}

# Routing prefixes used by OpenAI-compatible gateways ("google/gemini-3-pro").
_GATEWAY_PREFIXES = ("google/", "openai/", "anthropic/", "models/")


def normalize_model_name(model: str) -> str:
    """Strip gateway routing prefixes so families match across wire APIs."""
    name = model.strip()
    lowered = name.lower()
    for prefix in _GATEWAY_PREFIXES:
        if lowered.startswith(prefix):
            return name[len(prefix) :]
    return name


def find_family_for_model(model: str) -> ModelFamily | None:
    """Return the family for *model*, or None when no prefix matches."""
    name = normalize_model_name(model)
    lowered = name.lower()
    best: str | None = None
    for prefix in _FAMILIES:
        if lowered.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return None
    return replace(_FAMILIES[best], slug=name)


def derive_default_family(model: str) -> ModelFamily:
    """Conservative family for models the registry does not know."""
    name = normalize_model_name(model)
    return ModelFamily(slug=name, family=name)


def resolve_family(model: str) -> ModelFamily:
    """Return the registered family for *model*, falling back to the default."""
    return find_family_for_model(model) or derive_default_family(model)


def known_family_prefixes() -> tuple[str, ...]:
    return tuple(sorted(_FAMILIES))
