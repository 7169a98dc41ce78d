"""Backend client: one Responses API turn in, one normalized TurnResult out."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from .errors import BackendRequestFailed, BackendTimeout, ConfigError
from .tools import TOOLS, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_TIMEOUT = 120.0

_TEXT_DELTA_EVENT = "response.output_text.delta"
_COMPLETED_EVENT = "response.completed"
_FAILED_EVENTS = ("response.failed", "response.incomplete", "error")


def _field(obj, key, default=None):
    """Read key from a dict or attribute from an object (litellm returns both)."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


# -- Output items -------------------------------------------------------------


@dataclass(frozen=True)
class MessageItem:
    text: str


@dataclass(frozen=True)
class FunctionCallItem:
    call_id: str
    name: str
    arguments_json: str


@dataclass(frozen=True)
class IgnoredItem:
    """Any output item kind the loop does not act on (reasoning, etc.)."""

    kind: str


def parse_output_item(raw) -> MessageItem | FunctionCallItem | IgnoredItem:
    kind = _field(raw, "type")
    if kind == "message":
        parts = _field(raw, "content") or []
        text = "".join(
            _field(p, "text") or ""
            for p in parts
            if _field(p, "type") == "output_text"
        )
        return MessageItem(text=text)
    if kind == "function_call":
        return FunctionCallItem(
            call_id=_field(raw, "call_id") or "",
            name=_field(raw, "name") or "",
            arguments_json=_field(raw, "arguments") or "",
        )
    return IgnoredItem(kind=str(kind))


@dataclass
class TurnResult:
    response_id: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    texts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.texts)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def reduce_response(response) -> TurnResult:
    """Collapse a complete backend response into a TurnResult."""
    response_id = _field(response, "id")
    if not response_id:
        raise BackendRequestFailed("backend response has no id")

    result = TurnResult(response_id=response_id)
    for raw in _field(response, "output") or []:
        item = parse_output_item(raw)
        if isinstance(item, FunctionCallItem):
            result.tool_calls.append(
                ToolCall.from_json(item.call_id, item.name, item.arguments_json)
            )
        elif isinstance(item, MessageItem):
            if item.text:
                result.texts.append(item.text)
        elif isinstance(item, IgnoredItem):
            logger.debug("ignoring output item of type %s", item.kind)
        else:
            raise AssertionError(f"unhandled output item {item!r}")
    return result


async def reduce_stream(events, on_text_delta=None) -> TurnResult:
    """Consume a streaming response, forwarding text deltas, until completion."""
    completed = None
    async for event in events:
        kind = _field(event, "type")
        if kind == _TEXT_DELTA_EVENT:
            delta = _field(event, "delta") or ""
            if delta and on_text_delta is not None:
                on_text_delta(delta)
        elif kind == _COMPLETED_EVENT:
            completed = _field(event, "response")
        elif kind in _FAILED_EVENTS:
            error = _field(event, "error") or _field(event, "message") or kind
            raise BackendRequestFailed(f"backend stream failed: {error}")
    if completed is None:
        raise BackendRequestFailed("backend stream ended without a completed response")
    return reduce_response(completed)


# -- Client -------------------------------------------------------------------


class ModelClient:
    """Sends turns to the backend described by a BackendProfile.

    Provider differences live entirely in the profile (model string, base
    URL, key); this class only speaks the Responses API through litellm.
    """

    def __init__(
        self,
        profile,
        *,
        timeout: float = DEFAULT_BACKEND_TIMEOUT,
        stream: bool = False,
    ):
        if not profile.api_key:
            raise ConfigError(f"no API key configured for provider {profile.name!r}")
        self.profile = profile
        self.timeout = timeout
        self.stream = stream

    def _request_kwargs(self, turn_input, tools, continuation, instructions) -> dict:
        kwargs = dict(
            model=self.profile.model,
            input=turn_input,
            tools=tools,
            tool_choice="auto",
            parallel_tool_calls=False,
            store=True,
            stream=self.stream,
            api_key=self.profile.api_key,
            timeout=self.timeout,
        )
        if self.profile.base_url:
            kwargs["api_base"] = self.profile.base_url
        if instructions:
            kwargs["instructions"] = instructions
        if continuation:
            kwargs["previous_response_id"] = continuation
        return kwargs

    async def _request(self, kwargs: dict, on_text_delta) -> TurnResult:
        import litellm

        litellm.suppress_debug_info = True
        try:
            response = await litellm.aresponses(**kwargs)
            if self.stream:
                return await reduce_stream(response, on_text_delta)
        except BackendRequestFailed:
            raise
        except litellm.Timeout as e:
            raise BackendTimeout(f"backend call timed out: {e}") from e
        except Exception as e:
            raise BackendRequestFailed(f"backend request failed: {e}") from e
        return reduce_response(response)

    async def send(
        self,
        turn_input: list,
        tools: list | None = None,
        continuation: str | None = None,
        *,
        instructions: str | None = None,
        on_text_delta=None,
    ) -> TurnResult:
        kwargs = self._request_kwargs(
            turn_input, TOOLS if tools is None else tools, continuation, instructions
        )
        logger.debug(
            "sending %d input item(s), previous_response_id=%s",
            len(turn_input),
            continuation,
        )
        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._request(kwargs, on_text_delta), self.timeout
            )
        except asyncio.TimeoutError:
            raise BackendTimeout(
                f"backend call timed out after {self.timeout:g}s"
            ) from None
        logger.debug(
            "response %s in %.1fs: %d tool call(s)",
            result.response_id,
            time.monotonic() - t0,
            len(result.tool_calls),
        )
        return result
