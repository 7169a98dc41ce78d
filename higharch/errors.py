"""Exception types shared across higharch."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing API key, bad config file, etc.)."""


class BackendError(AgentError):
    """Raised when a turn against the inference backend fails."""


class BackendTimeout(BackendError):
    """Raised when the backend does not answer within the configured timeout."""


class BackendRequestFailed(BackendError):
    """Raised for transport or protocol failures talking to the backend."""


class TooManyToolRounds(AgentError):
    """Raised when the backend keeps requesting tools past the round limit."""


class ApprovalPendingError(RuntimeError):
    """Raised when an approval is requested while another is still outstanding."""
