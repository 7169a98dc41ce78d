"""Tests for tool definitions and the tool call dispatcher."""

import asyncio

import pytest

from higharch.approval import ApprovalGate
from higharch.tools import (
    DENIED_ERROR,
    DENIED_OUTPUT,
    INVALID_COMMAND_ERROR,
    TOOLS,
    UNKNOWN_TOOL_ERROR,
    ToolCall,
    ToolCallDispatcher,
    ToolExecutionResult,
    tool_output_item,
)


class FakeExecutor:
    """Records commands and returns canned results."""

    def __init__(self, result=None, exc=None):
        self.calls = []
        self.result = result or ToolExecutionResult(success=True, output="ran\n")
        self.exc = exc

    async def run(self, command, timeout=None):
        self.calls.append((command, timeout))
        if self.exc is not None:
            raise self.exc
        return self.result


class RecordingGate(ApprovalGate):
    def __init__(self, answer, **kwargs):
        super().__init__(**kwargs)
        self.requests = []
        self.on_request = self._answer
        self.answer = answer

    def _answer(self, pending):
        self.requests.append(pending.request)
        if self.answer is not None:
            self.decide(self.answer)


def _dispatch(calls, executor, gate, **kwargs):
    dispatcher = ToolCallDispatcher(executor, gate, **kwargs)
    return asyncio.run(dispatcher.dispatch(calls))


def _call(name, command=None, call_id="call_1"):
    args = {} if command is None else {"command": command}
    return ToolCall(call_id=call_id, name=name, arguments=args)


# ---------- Tool schemas ----------


class TestToolSchemas:
    def test_two_tools(self):
        assert [t["name"] for t in TOOLS] == ["ls", "exec"]

    @pytest.mark.parametrize("tool", TOOLS, ids=lambda t: t["name"])
    def test_command_required(self, tool):
        assert tool["type"] == "function"
        params = tool["parameters"]
        assert params["required"] == ["command"]
        assert params["properties"]["command"]["type"] == "string"
        assert params["additionalProperties"] is False

    def test_exec_mentions_approval(self):
        exec_tool = next(t for t in TOOLS if t["name"] == "exec")
        assert "approval" in exec_tool["description"]


# ---------- ToolCall / results ----------


class TestToolCall:
    def test_from_json(self):
        call = ToolCall.from_json("c1", "ls", '{"command": "ls -la"}')
        assert call.arguments == {"command": "ls -la"}
        assert call.raw_arguments == '{"command": "ls -la"}'

    def test_malformed_json_yields_empty_arguments(self):
        call = ToolCall.from_json("c1", "exec", "{not json")
        assert call.arguments == {}
        assert call.raw_arguments == "{not json"

    def test_non_object_json_yields_empty_arguments(self):
        assert ToolCall.from_json("c1", "exec", '["ls"]').arguments == {}

    def test_empty_arguments(self):
        assert ToolCall.from_json("c1", "ls", None).arguments == {}
        assert ToolCall.from_json("c1", "ls", "").arguments == {}


class TestResultText:
    def test_success_is_output(self):
        assert ToolExecutionResult(success=True, output="a\nb\n").to_text() == "a\nb\n"

    def test_failure_carries_error_and_output(self):
        result = ToolExecutionResult(success=False, output=DENIED_OUTPUT, error=DENIED_ERROR)
        assert result.to_text() == f"error: {DENIED_ERROR}\n{DENIED_OUTPUT}"

    def test_failure_without_output(self):
        result = ToolExecutionResult(success=False, error="exit code 1: nope")
        assert result.to_text() == "error: exit code 1: nope"

    def test_output_item_keyed_by_call_id(self):
        item = tool_output_item(
            _call("ls", "ls", call_id="call_xyz"),
            ToolExecutionResult(success=True, output="x"),
        )
        assert item == {"type": "function_call_output", "call_id": "call_xyz", "output": "x"}


# ---------- Dispatcher ----------


class TestDispatchListing:
    def test_ls_runs_without_approval(self):
        executor = FakeExecutor()
        gate = RecordingGate(answer=None, timeout=5)
        results = _dispatch([_call("ls", "ls -la")], executor, gate, command_timeout=7)
        assert results == [executor.result]
        assert executor.calls == [("ls -la", 7)]
        assert gate.requests == []

    def test_unknown_tool(self):
        executor = FakeExecutor()
        gate = RecordingGate(answer=True, timeout=5)
        results = _dispatch([_call("rm", "rm -rf /")], executor, gate)
        assert results[0].success is False
        assert results[0].error == UNKNOWN_TOOL_ERROR
        assert executor.calls == []
        assert gate.requests == []


class TestDispatchInvalidCommand:
    @pytest.mark.parametrize("name", ["ls", "exec"])
    @pytest.mark.parametrize("command", [None, 42, "", "   "])
    def test_rejected_before_gate(self, name, command):
        executor = FakeExecutor()
        gate = RecordingGate(answer=True, timeout=5)
        call = ToolCall(
            call_id="c1",
            name=name,
            arguments={} if command is None else {"command": command},
        )
        results = _dispatch([call], executor, gate)
        assert results[0].success is False
        assert results[0].error == INVALID_COMMAND_ERROR
        assert executor.calls == []
        assert gate.requests == []
        assert gate.state == "idle"


class TestDispatchExec:
    def test_approved_exec_runs(self):
        executor = FakeExecutor()
        gate = RecordingGate(answer=True, timeout=5)
        results = _dispatch([_call("exec", "touch hello.txt")], executor, gate)
        assert results == [executor.result]
        assert executor.calls == [("touch hello.txt", None)]
        assert [r.command for r in gate.requests] == ["touch hello.txt"]
        assert gate.state == "idle"

    def test_denied_exec_never_runs(self):
        executor = FakeExecutor()
        gate = RecordingGate(answer=False, timeout=5)
        results = _dispatch([_call("exec", "touch hello.txt")], executor, gate)
        assert results == [
            ToolExecutionResult(success=False, output=DENIED_OUTPUT, error=DENIED_ERROR)
        ]
        assert executor.calls == []

    def test_unanswered_exec_denied_on_timeout(self):
        executor = FakeExecutor()
        gate = RecordingGate(answer=None, timeout=0.05)
        results = _dispatch([_call("exec", "touch hello.txt")], executor, gate)
        assert results[0].error == DENIED_ERROR
        assert results[0].output == DENIED_OUTPUT
        assert executor.calls == []
        assert gate.state == "idle"

    def test_request_carries_arguments(self):
        gate = RecordingGate(answer=False, timeout=5)
        _dispatch([_call("exec", "mkdir docs")], FakeExecutor(), gate)
        request = gate.requests[0]
        assert request.tool_name == "exec"
        assert request.arguments == {"command": "mkdir docs"}

    def test_executor_exception_becomes_process_error(self):
        executor = FakeExecutor(exc=RuntimeError("spawn exploded"))
        gate = RecordingGate(answer=True, timeout=5)
        results = _dispatch([_call("exec", "touch x")], executor, gate)
        assert results[0].success is False
        assert results[0].error == "process error: spawn exploded"


class TestDispatchOrder:
    def test_results_follow_request_order(self):
        class EchoExecutor(FakeExecutor):
            async def run(self, command, timeout=None):
                self.calls.append((command, timeout))
                return ToolExecutionResult(success=True, output=command)

        executor = EchoExecutor()
        gate = RecordingGate(answer=True, timeout=5)
        calls = [
            _call("ls", "ls", call_id="a"),
            _call("exec", "mkdir d", call_id="b"),
            _call("nope", "x", call_id="c"),
            _call("exec", "touch d/f", call_id="d"),
        ]
        results = _dispatch(calls, executor, gate)
        assert [r.output for r in results] == ["ls", "mkdir d", "", "touch d/f"]
        assert [c for c, _ in executor.calls] == ["ls", "mkdir d", "touch d/f"]

    def test_callbacks_fire_per_call(self):
        events = []
        dispatcher = ToolCallDispatcher(FakeExecutor(), RecordingGate(answer=False, timeout=5))
        calls = [_call("ls", "ls", call_id="a"), _call("exec", "touch f", call_id="b")]
        asyncio.run(
            dispatcher.dispatch(
                calls,
                on_tool_call=lambda c: events.append(("call", c.call_id)),
                on_tool_result=lambda c, r: events.append(("result", c.call_id, r.success)),
            )
        )
        assert events == [
            ("call", "a"),
            ("result", "a", True),
            ("call", "b"),
            ("result", "b", False),
        ]
