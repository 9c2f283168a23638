"""Tool schemas selected by model family."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from castor.families import APPLY_PATCH_INSTRUCTIONS, ApplyPatchToolType, ShellType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from castor.families import ModelFamily

ToolKind = Literal["function", "freeform"]

_EMPTY_OBJECT: dict[str, Any] = {"type": "object", "properties": {}}

APPLY_PATCH_LARK_GRAMMAR = r"""start: begin_patch hunk+ end_patch
begin_patch: "*** Begin Patch" LF
end_patch: "*** End Patch" LF?

hunk: add_hunk | delete_hunk | update_hunk
add_hunk: "*** Add File: " filename LF add_line+
delete_hunk: "*** Delete File: " filename LF
update_hunk: "*** Update File: " filename LF change_move? change?

filename: /(.+)/
add_line: "+" /(.*)/ LF -> line

change_move: "*** Move to: " filename LF
change: (change_context | change_line)+ eof_line?
change_context: ("@@" | "@@ " /(.+)/) LF
change_line: ("+" | "-" | " ") /(.*)/ LF
eof_line: "*** End of File" LF

%import common.LF
"""


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may call.

    ``freeform`` tools take raw text constrained by ``grammar``. Wire APIs
    without freeform support receive them as a function with one ``input``
    string parameter.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: deepcopy(_EMPTY_OBJECT))
    kind: ToolKind = "function"
    grammar: str | None = None

    def function_parameters(self) -> dict[str, Any]:
        """JSON schema for this tool when sent as a plain function."""
        if self.kind == "freeform":
            return {
                "type": "object",
                "properties": {
                    "input": {
                        "type": "string",
                        "description": "The entire contents of the tool input.",
                    }
                },
                "required": ["input"],
                "additionalProperties": False,
            }
        return deepcopy(self.parameters)


def _timeout_and_workdir() -> dict[str, Any]:
    return {
        "workdir": {
            "type": "string",
            "description": "The working directory to execute the command in.",
        },
        "timeout_ms": {
            "type": "number",
            "description": "The timeout for the command in milliseconds.",
        },
    }


def shell_tool(shell_type: ShellType) -> ToolSpec:
    """Shell tool in the invocation style of *shell_type*."""
    if shell_type is ShellType.SHELL_COMMAND:
        return ToolSpec(
            name="shell_command",
            description="Runs a shell command and returns its output.",
            parameters={
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell script to execute.",
                    },
                    **_timeout_and_workdir(),
                },
                "required": ["command"],
                "additionalProperties": False,
            },
        )
    return ToolSpec(
        name="shell",
        description="Runs a command and returns its output.",
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "The command to execute as an argv array.",
                },
                **_timeout_and_workdir(),
            },
            "required": ["command"],
            "additionalProperties": False,
        },
    )


def apply_patch_tool(tool_type: ApplyPatchToolType) -> ToolSpec:
    if tool_type is ApplyPatchToolType.FREEFORM:
        return ToolSpec(
            name="apply_patch",
            description=APPLY_PATCH_INSTRUCTIONS,
            kind="freeform",
            grammar=APPLY_PATCH_LARK_GRAMMAR,
        )
    return ToolSpec(
        name="apply_patch",
        description=APPLY_PATCH_INSTRUCTIONS,
        parameters={
            "type": "object",
            "properties": {
                "input": {
                    "type": "string",
                    "description": "The entire contents of the apply_patch command.",
                }
            },
            "required": ["input"],
            "additionalProperties": False,
        },
    )


def tools_for_family(
    family: ModelFamily, *, extra: Iterable[ToolSpec] = ()
) -> tuple[ToolSpec, ...]:
    """Return the tool schema for *family*, followed by *extra* tools."""
    tools: list[ToolSpec] = [shell_tool(family.shell_type)]
    if family.apply_patch_tool_type is not None:
        tools.append(apply_patch_tool(family.apply_patch_tool_type))
    seen = {t.name for t in tools}
    for tool in extra:
        if tool.name in seen:
            continue
        seen.add(tool.name)
        tools.append(tool)
    return tuple(tools)
