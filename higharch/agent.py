import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from importlib import metadata

from . import fmt
from .approval import ApprovalGate, TIMED_OUT
from .client import ModelClient
from .config import (
    _UNSET,
    apply_config_to_args,
    global_config_dir,
    load_config,
    resolve_profile,
    write_config,
)
from .conversation import ConversationState
from .errors import AgentError, TooManyToolRounds
from .executor import CommandExecutor
from .tools import TOOLS, ToolCallDispatcher, tool_output_item

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
FOLLOWUP_SUFFIX = "Continue the conversation with the tool results."
DEFAULT_MAX_TOOL_ROUNDS = 10
LISTING_COMMAND = "ls -la"


@dataclass
class ChatCallbacks:
    """Hooks the caller can set to observe a turn. All are optional."""

    on_text_delta: Callable[[str], None] | None = None
    on_tool_call: Callable | None = None
    on_tool_result: Callable | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class ConversationOrchestrator:
    """Drives one user turn: model call, tool dispatch, follow-ups, final text.

    Each follow-up carries only the tool outputs plus the continuation
    handle of the previous response. The number of tool rounds per user
    turn is capped by ``max_tool_rounds``.
    """

    def __init__(
        self,
        client,
        dispatcher,
        state: ConversationState | None = None,
        *,
        instructions: str | None = None,
        followup_instructions: str | None = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        tools: list | None = None,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.state = state if state is not None else ConversationState()
        if instructions is None:
            instructions = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
        self.instructions = instructions
        self.followup_instructions = (
            followup_instructions
            if followup_instructions is not None
            else f"{instructions}\n\n{FOLLOWUP_SUFFIX}"
        )
        self.max_tool_rounds = max_tool_rounds
        self.tools = TOOLS if tools is None else tools

    async def chat(self, user_text: str, callbacks: ChatCallbacks | None = None) -> str | None:
        """Run one user turn to completion and return the final assistant text.

        Backend failures abort the turn with the history left intact: the
        error goes to ``callbacks.on_error`` when set (and None is
        returned), otherwise it propagates. Any failure, cancellation
        included, puts the continuation back to where the turn started.
        """
        callbacks = callbacks or ChatCallbacks()
        state = self.state
        turn_start = state.continuation

        state.append_user(user_text)
        if turn_start:
            turn_input = state.last_user_item()
        else:
            turn_input = state.to_input_items()

        try:
            return await self._run_turn(turn_input, callbacks)
        except AgentError as e:
            state.continuation = turn_start
            logger.debug("turn aborted: %s", e)
            if callbacks.on_error is None:
                raise
            callbacks.on_error(e)
            return None
        except BaseException:
            # Outputs of an interrupted round were never sent.
            state.continuation = turn_start
            raise

    async def _send(self, turn_input: list, instructions: str, callbacks: ChatCallbacks):
        deltas: list[str] = []
        result = await self.client.send(
            turn_input,
            self.tools,
            self.state.continuation,
            instructions=instructions,
            on_text_delta=deltas.append if callbacks.on_text_delta else None,
        )
        self.state.continuation = result.response_id
        # Only the final round's text reaches the caller.
        if callbacks.on_text_delta is not None and not result.tool_calls:
            for delta in deltas:
                callbacks.on_text_delta(delta)
        return result

    async def _run_turn(self, turn_input: list, callbacks: ChatCallbacks) -> str:
        result = await self._send(turn_input, self.instructions, callbacks)

        rounds = 0
        while result.tool_calls:
            rounds += 1
            if rounds > self.max_tool_rounds:
                raise TooManyToolRounds(
                    f"backend requested tools for more than {self.max_tool_rounds} rounds"
                )
            if result.text:
                logger.debug("assistant text alongside tool calls: %s", result.text)

            calls = result.tool_calls
            outcomes = await self.dispatcher.dispatch(
                calls,
                on_tool_call=callbacks.on_tool_call,
                on_tool_result=callbacks.on_tool_result,
            )
            outputs = [tool_output_item(c, r) for c, r in zip(calls, outcomes)]
            result = await self._send(outputs, self.followup_instructions, callbacks)

        text = result.text
        if text:
            self.state.append_assistant(text)
            if callbacks.on_complete is not None:
                callbacks.on_complete(text)
        return text


def build_orchestrator(
    profile,
    *,
    backend_timeout: float = 120.0,
    approval_timeout: float = 60.0,
    command_timeout: float = 30.0,
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    stream: bool = False,
    instructions: str | None = None,
    cwd: str | None = None,
) -> ConversationOrchestrator:
    """Wire client, gate, executor and dispatcher into an orchestrator."""
    client = ModelClient(profile, timeout=backend_timeout, stream=stream)
    gate = ApprovalGate(timeout=approval_timeout)
    executor = CommandExecutor(timeout=command_timeout, cwd=cwd)
    dispatcher = ToolCallDispatcher(executor, gate, command_timeout=command_timeout)
    return ConversationOrchestrator(
        client,
        dispatcher,
        instructions=instructions,
        max_tool_rounds=max_tool_rounds,
    )


# ---------------------------------------------------------------------------
# Terminal wiring
# ---------------------------------------------------------------------------


def install_approval_prompt(gate: ApprovalGate, prompt_session, *, auto_approve: bool = False):
    """Route approval requests to the terminal.

    With auto_approve every request is approved immediately (it still goes
    through the gate). Otherwise the user is asked; no answer before the
    deadline leaves the gate to deny the request.
    """

    if auto_approve:

        def _approve(pending):
            fmt.info(f"auto-approved: {pending.request.command}")
            gate.decide(True)

        gate.on_request = _approve
        return

    async def _ask(pending):
        try:
            answer = await prompt_session.prompt_async("Approve? [y/N] ")
        except (EOFError, KeyboardInterrupt):
            answer = ""
        if gate.pending is pending:
            gate.decide(answer.strip().lower() in ("y", "yes"))

    def _on_request(pending):
        fmt.approval_request(pending.request.command, pending.remaining())
        task = asyncio.ensure_future(_ask(pending))

        def _done(p):
            if p.outcome == TIMED_OUT:
                fmt.approval_timed_out(p.request.command)
            task.cancel()

        pending.add_done_callback(_done)

    gate.on_request = _on_request


def make_terminal_callbacks(*, verbose: bool, stream: bool, errors: list) -> ChatCallbacks:
    """Callbacks that print tool activity to stderr and the answer to stdout."""
    streamed = {"any": False}

    def _on_text_delta(delta):
        streamed["any"] = True
        sys.stdout.write(delta)
        sys.stdout.flush()

    def _on_tool_call(call):
        streamed["any"] = False
        if verbose:
            fmt.tool_call(call.name, str(call.arguments.get("command", "")))

    def _on_tool_result(call, result):
        if not verbose:
            return
        if result.success:
            fmt.tool_result(call.name, result.output[:500])
        else:
            fmt.tool_error(call.name, result.error or "failed")

    def _on_complete(text):
        if streamed["any"]:
            print()
        else:
            print(text)

    def _on_error(exc):
        errors.append(exc)
        fmt.error(str(exc))

    return ChatCallbacks(
        on_text_delta=_on_text_delta if stream else None,
        on_tool_call=_on_tool_call,
        on_tool_result=_on_tool_result,
        on_complete=_on_complete,
        on_error=_on_error,
    )


async def show_listing(executor: CommandExecutor, provider: str) -> None:
    result = await executor.run(LISTING_COMMAND)
    listing = result.output if result.success else f"error: {result.error}"
    fmt.cwd_header(executor.cwd or os.getcwd(), provider, listing)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that the config file may also set default to _UNSET so that
    apply_config_to_args() can tell them apart from explicit CLI values.
    """
    parser = argparse.ArgumentParser(
        prog="higharch",
        usage="%(prog)s [options] [question]",
        description="A terminal assistant that organizes folders with approval-gated shell commands.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session (the default when no question is given).",
    )
    parser.add_argument(
        "--provider",
        choices=["echo", "openai"],
        default=_UNSET,
        help="Backend provider: echo (Echo router, default) or openai.",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier (default: gpt-4o).")
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides ECHO_API_KEY / OPENAI_API_KEY).",
    )
    parser.add_argument("--base-url", default=_UNSET, help="Override the backend base URL.")
    parser.add_argument(
        "--backend-timeout",
        type=float,
        default=_UNSET,
        help="Seconds to wait for each backend call (default: 120).",
    )
    parser.add_argument(
        "--approval-timeout",
        type=float,
        default=_UNSET,
        help="Seconds before an unanswered approval is denied (default: 60).",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=_UNSET,
        help="Seconds before a running command is terminated (default: 30).",
    )
    parser.add_argument(
        "--max-tool-rounds",
        type=int,
        default=_UNSET,
        help="Maximum tool-call rounds per question (default: 10).",
    )
    parser.add_argument(
        "--stream",
        action=argparse.BooleanOptionalAction,
        default=_UNSET,
        help="Stream the answer as it is generated.",
    )
    parser.add_argument(
        "--instructions",
        default=_UNSET,
        help="Replace the default instructions sent with every turn.",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=_UNSET,
        help="Approve every exec command without asking.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print the final answer.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write ./higharch.toml instead of the global file.",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("higharch")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    try:
        if args.init_config:
            if args.project:
                path = Path.cwd() / "higharch.toml"
            else:
                path = global_config_dir() / "config.toml"
            print(write_config(path, project=args.project))
            sys.exit(0)

        apply_config_to_args(args, load_config(Path.cwd()))
        args.verbose = not args.quiet
        fmt.init(color=args.color, no_color=args.no_color)
        sys.exit(asyncio.run(_run_main(args)))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


async def _run_main(args) -> int:
    from prompt_toolkit import PromptSession

    profile = resolve_profile(
        args.provider, model=args.model, api_key=args.api_key, base_url=args.base_url
    )
    if args.verbose:
        fmt.model_info(f"Using {profile.model} via {profile.name}")

    orchestrator = build_orchestrator(
        profile,
        backend_timeout=args.backend_timeout,
        approval_timeout=args.approval_timeout,
        command_timeout=args.command_timeout,
        max_tool_rounds=args.max_tool_rounds,
        stream=args.stream,
        instructions=args.instructions,
    )
    prompt_session = None if args.yes else PromptSession()
    install_approval_prompt(
        orchestrator.dispatcher.gate, prompt_session, auto_approve=args.yes
    )

    if args.question and not args.repl:
        errors: list = []
        callbacks = make_terminal_callbacks(
            verbose=args.verbose, stream=args.stream, errors=errors
        )
        await orchestrator.chat(args.question, callbacks)
        return 1 if errors else 0

    await repl_loop(
        orchestrator,
        provider=profile.name,
        verbose=args.verbose,
        stream=args.stream,
        question=args.question,
    )
    return 0


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start a new conversation\n"
        "  /ls                Show the current directory listing\n"
        "  /exit, /quit       Leave higharch"
    )


def _repl_clear(orchestrator: ConversationOrchestrator) -> None:
    orchestrator.state.reset()
    fmt.info("Conversation cleared.")


async def _repl_ask(orchestrator, line: str, callbacks: ChatCallbacks) -> None:
    """Run one question as its own task; Ctrl-C cancels that task only."""
    loop = asyncio.get_running_loop()
    turn = asyncio.ensure_future(orchestrator.chat(line, callbacks))
    handles_sigint = False
    if sys.platform != "win32":
        try:
            loop.add_signal_handler(signal.SIGINT, turn.cancel)
            handles_sigint = True
        except (NotImplementedError, RuntimeError, ValueError):
            pass  # not the main thread
    try:
        await turn
    except asyncio.CancelledError:
        if asyncio.current_task().cancelling():
            raise
        print(file=sys.stderr)
        fmt.warning("interrupted, question aborted.")
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)


async def repl_loop(
    orchestrator: ConversationOrchestrator,
    *,
    provider: str,
    verbose: bool,
    stream: bool = False,
    question: str | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = global_config_dir() / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "higharch> ")])
    executor = orchestrator.dispatcher.executor

    if verbose:
        fmt.repl_banner()
        await show_listing(executor, provider)

    errors: list = []
    callbacks = make_terminal_callbacks(verbose=verbose, stream=stream, errors=errors)
    ran_tools = {"any": False}
    inner_on_tool_call = callbacks.on_tool_call

    def _track_tool_call(call):
        ran_tools["any"] = True
        inner_on_tool_call(call)

    callbacks.on_tool_call = _track_tool_call

    pending_line = question
    while True:
        if pending_line is not None:
            line, pending_line = pending_line, None
        else:
            try:
                print(file=sys.stderr)  # blank line before prompt
                line = await session.prompt_async(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)  # newline after ^D / ^C
                break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(orchestrator)
            continue
        elif cmd == "/ls":
            await show_listing(executor, provider)
            continue

        ran_tools["any"] = False
        await _repl_ask(orchestrator, line, callbacks)
        if ran_tools["any"] and verbose:
            await show_listing(executor, provider)


if __name__ == "__main__":
    main()
