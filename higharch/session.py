"""Public library API for higharch: Session class and Result dataclass."""

import asyncio
from dataclasses import dataclass

from .conversation import Message


@dataclass
class Result:
    """Result of an ask call."""

    answer: str | None
    messages: list[Message]


class Session:
    """Programmatic interface to the higharch agent loop.

    Stores configuration as plain attributes and builds the orchestrator on
    first use. ``approve`` decides mutating commands: it receives an
    ApprovalRequest and returns a bool. Without it every exec is denied.

    The session owns its event loop so that ``ask()`` can be called
    repeatedly from synchronous code; use ``aask()`` from async code.
    """

    def __init__(
        self,
        *,
        provider: str = "echo",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        backend_timeout: float = 120.0,
        approval_timeout: float = 60.0,
        command_timeout: float = 30.0,
        max_tool_rounds: int = 10,
        stream: bool = False,
        instructions: str | None = None,
        approve=None,
        cwd: str | None = None,
    ):
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.backend_timeout = backend_timeout
        self.approval_timeout = approval_timeout
        self.command_timeout = command_timeout
        self.max_tool_rounds = max_tool_rounds
        self.stream = stream
        self.instructions = instructions
        self.approve = approve
        self.cwd = cwd

        self._orchestrator = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _setup(self):
        """Resolve the backend profile and wire the orchestrator (once)."""
        if self._orchestrator is not None:
            return self._orchestrator

        from .agent import build_orchestrator
        from .config import resolve_profile

        profile = resolve_profile(
            self.provider,
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
        )
        orchestrator = build_orchestrator(
            profile,
            backend_timeout=self.backend_timeout,
            approval_timeout=self.approval_timeout,
            command_timeout=self.command_timeout,
            max_tool_rounds=self.max_tool_rounds,
            stream=self.stream,
            instructions=self.instructions,
            cwd=self.cwd,
        )
        gate = orchestrator.dispatcher.gate
        approve = self.approve

        def _on_request(pending):
            gate.decide(bool(approve(pending.request)) if approve else False)

        gate.on_request = _on_request
        self._orchestrator = orchestrator
        return orchestrator

    @property
    def messages(self) -> list[Message]:
        if self._orchestrator is None:
            return []
        return self._orchestrator.state.snapshot()

    async def aask(self, question: str, callbacks=None) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        orchestrator = self._setup()
        answer = await orchestrator.chat(question, callbacks)
        return Result(answer=answer, messages=orchestrator.state.snapshot())

    def ask(self, question: str, callbacks=None) -> Result:
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        return self._loop.run_until_complete(self.aask(question, callbacks))

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        if self._orchestrator is not None:
            self._orchestrator.state.reset()

    def close(self) -> None:
        if self._loop is not None:
            self._loop.close()
            self._loop = None
