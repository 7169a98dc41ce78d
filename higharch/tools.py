"""Tool definitions and the dispatcher that executes backend tool calls."""

import json
import logging
from dataclasses import dataclass, field

from .approval import ApprovalRequest

logger = logging.getLogger(__name__)

LS_TOOL = {
    "type": "function",
    "name": "ls",
    "description": (
        "Executes a list command, does not require user approval to run, "
        "cannot look inside files."
    ),
    "strict": False,
    "parameters": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "ls command with any flags (e.g. 'ls -la', 'tree').",
            },
        },
        "required": ["command"],
        "additionalProperties": False,
    },
}

EXEC_TOOL = {
    "type": "function",
    "name": "exec",
    "description": (
        "Executes mutating shell commands (mv, cp, mkdir, touch, ...). "
        "Requires user approval to run."
    ),
    "strict": False,
    "parameters": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Shell command to execute.",
            },
        },
        "required": ["command"],
        "additionalProperties": False,
    },
}

TOOLS = [LS_TOOL, EXEC_TOOL]

LISTING = "listing"
MUTATING_EXEC = "mutating_exec"

# Tool name -> capability. Only mutating tools go through the approval gate.
CAPABILITIES = {
    LS_TOOL["name"]: LISTING,
    EXEC_TOOL["name"]: MUTATING_EXEC,
}

DENIED_OUTPUT = "Command cancelled by user"
DENIED_ERROR = "User denied approval"
INVALID_COMMAND_ERROR = "Invalid command parameter"
UNKNOWN_TOOL_ERROR = "unknown tool"


@dataclass(frozen=True)
class ToolCall:
    """A single tool invocation requested by the backend."""

    call_id: str
    name: str
    arguments: dict = field(default_factory=dict)
    raw_arguments: str = ""

    @classmethod
    def from_json(cls, call_id: str, name: str, arguments_json: str | None) -> "ToolCall":
        """Build a ToolCall, tolerating malformed argument JSON.

        Anything that does not decode to a JSON object yields empty
        arguments; the dispatcher then reports the missing command.
        """
        raw = arguments_json or ""
        try:
            parsed = json.loads(raw) if raw else {}
        except (json.JSONDecodeError, TypeError):
            logger.warning("tool call %s: invalid JSON arguments: %r", call_id, raw)
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}
        return cls(call_id=call_id, name=name, arguments=parsed, raw_arguments=raw)


@dataclass(frozen=True)
class ToolExecutionResult:
    success: bool
    output: str = ""
    error: str | None = None

    def to_text(self) -> str:
        """Render the result as the text payload sent back to the backend."""
        if self.success:
            return self.output
        text = f"error: {self.error}" if self.error else "error: tool failed"
        if self.output:
            text += "\n" + self.output
        return text


def tool_output_item(call: ToolCall, result: ToolExecutionResult) -> dict:
    """Backend input item carrying one tool result, keyed by the original call id."""
    return {
        "type": "function_call_output",
        "call_id": call.call_id,
        "output": result.to_text(),
    }


class ToolCallDispatcher:
    """Runs backend tool calls one at a time, in the order they were requested.

    Listing calls go straight to the executor. Mutating calls are held at
    the approval gate first; a denial or timeout short-circuits without
    spawning anything.
    """

    def __init__(self, executor, gate, *, command_timeout: float | None = None):
        self.executor = executor
        self.gate = gate
        self.command_timeout = command_timeout

    async def dispatch(self, tool_calls, on_tool_call=None, on_tool_result=None):
        results: list[ToolExecutionResult] = []
        for call in tool_calls:
            if on_tool_call is not None:
                on_tool_call(call)
            result = await self.dispatch_one(call)
            if on_tool_result is not None:
                on_tool_result(call, result)
            results.append(result)
        return results

    async def dispatch_one(self, call: ToolCall) -> ToolExecutionResult:
        capability = CAPABILITIES.get(call.name)
        if capability is None:
            logger.warning("backend requested unknown tool %r", call.name)
            return ToolExecutionResult(success=False, error=UNKNOWN_TOOL_ERROR)

        command = call.arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            return ToolExecutionResult(success=False, error=INVALID_COMMAND_ERROR)

        if capability == MUTATING_EXEC:
            pending = self.gate.request(
                ApprovalRequest(
                    tool_name=call.name,
                    command=command,
                    arguments=dict(call.arguments),
                )
            )
            approved = await pending.wait()
            if not approved:
                logger.debug("approval %s for %r", pending.outcome, command)
                return ToolExecutionResult(
                    success=False, output=DENIED_OUTPUT, error=DENIED_ERROR
                )

        try:
            return await self.executor.run(command, timeout=self.command_timeout)
        except Exception as e:
            logger.exception("executor raised for %r", command)
            return ToolExecutionResult(success=False, error=f"process error: {e}")
