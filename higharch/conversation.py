"""Conversation history and the backend continuation handle."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

USER = "user"
ASSISTANT = "assistant"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    created_at: datetime = field(default_factory=_now)

    def to_input_item(self) -> dict:
        """Render as a Responses API input message."""
        part_type = "input_text" if self.role == USER else "output_text"
        return {
            "type": "message",
            "role": self.role,
            "content": [{"type": part_type, "text": self.content}],
        }


class ConversationState:
    """Ordered message history for the single active conversation.

    ``continuation`` is the opaque id of the last backend response. It is
    only stored and replayed, never inspected. Not thread-safe.
    """

    def __init__(self):
        self._messages: list[Message] = []
        self.continuation: str | None = None

    def __len__(self) -> int:
        return len(self._messages)

    def append_user(self, text: str) -> Message:
        return self._append(USER, text)

    def append_assistant(self, text: str) -> Message:
        return self._append(ASSISTANT, text)

    def _append(self, role: str, text: str) -> Message:
        if text is None:
            raise ValueError(f"{role} message text must not be None")
        msg = Message(role=role, content=text)
        self._messages.append(msg)
        return msg

    def snapshot(self) -> list[Message]:
        return list(self._messages)

    def reset(self) -> None:
        """Drop all messages and the continuation handle."""
        self._messages = []
        self.continuation = None

    def to_input_items(self) -> list[dict]:
        return [m.to_input_item() for m in self._messages]

    def last_user_item(self) -> list[dict]:
        """The most recent user message as a one-item input list (empty if none)."""
        for msg in reversed(self._messages):
            if msg.role == USER:
                return [msg.to_input_item()]
        return []
