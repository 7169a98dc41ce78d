"""higharch: a terminal assistant that organizes folders with approval-gated shell commands."""

from .session import Result, Session

__all__ = ["Result", "Session"]
