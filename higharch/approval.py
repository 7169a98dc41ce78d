"""Single-slot human approval gate for mutating tool calls.

The gate holds at most one outstanding request. A request resolves either
through ``decide()`` or when its deadline timer fires; both paths clear the
same state, after which the gate is idle again.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from .errors import ApprovalPendingError

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_TIMEOUT = 60.0

APPROVED = "approved"
DENIED = "denied"
TIMED_OUT = "timed_out"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class ApprovalRequest:
    tool_name: str
    command: str
    arguments: dict = field(default_factory=dict)


class PendingApproval:
    """Handle for one outstanding approval. Await ``wait()`` for the decision."""

    def __init__(self, gate, request: ApprovalRequest, future, deadline: float):
        self.request = request
        self.deadline = deadline
        self.outcome: str | None = None
        self._gate = gate
        self._future = future
        self._timer = None

    def remaining(self) -> float:
        """Seconds left before the request is auto-denied."""
        loop = self._future.get_loop()
        return max(0.0, self.deadline - loop.time())

    def add_done_callback(self, fn) -> None:
        """Call fn(pending) once the request resolves, whichever way."""
        self._future.add_done_callback(lambda _f: fn(self))

    async def wait(self) -> bool:
        try:
            return await self._future
        except asyncio.CancelledError:
            # The waiting turn was aborted; release the slot before unwinding.
            self._gate._resolve(self, False, CANCELLED)
            raise


class ApprovalGate:
    def __init__(self, timeout: float = DEFAULT_APPROVAL_TIMEOUT, on_request=None):
        self.timeout = timeout
        self.on_request = on_request
        self._pending: PendingApproval | None = None

    @property
    def pending(self) -> PendingApproval | None:
        return self._pending

    @property
    def state(self) -> str:
        return "idle" if self._pending is None else "pending"

    def request(self, request: ApprovalRequest) -> PendingApproval:
        """Open a new approval request. Only valid while the gate is idle."""
        if self._pending is not None:
            raise ApprovalPendingError(
                f"approval already pending for {self._pending.request.command!r}"
            )
        loop = asyncio.get_running_loop()
        pending = PendingApproval(
            self, request, loop.create_future(), loop.time() + self.timeout
        )
        pending._timer = loop.call_later(
            self.timeout, self._resolve, pending, False, TIMED_OUT
        )
        self._pending = pending
        logger.debug("approval requested: %s %r", request.tool_name, request.command)

        if self.on_request is not None:
            try:
                self.on_request(pending)
            except Exception:
                logger.exception("approval listener failed, denying request")
                self._resolve(pending, False, DENIED)
        return pending

    def decide(self, approved: bool) -> bool:
        """Resolve the outstanding request.

        Returns False (and does nothing) when no request is pending, e.g.
        when the deadline already fired.
        """
        pending = self._pending
        if pending is None:
            return False
        self._resolve(pending, bool(approved), APPROVED if approved else DENIED)
        return True

    def _resolve(self, pending: PendingApproval, approved: bool, outcome: str) -> None:
        if self._pending is not pending:
            return
        self._pending = None
        if pending._timer is not None:
            pending._timer.cancel()
            pending._timer = None
        pending.outcome = outcome
        if outcome == TIMED_OUT:
            logger.warning(
                "approval for %r timed out after %gs, denying",
                pending.request.command,
                self.timeout,
            )
        if not pending._future.done():
            pending._future.set_result(approved)
