"""Exception hierarchy for the agent runner."""
from typing import Optional

BODY_PREVIEW_CHARS = 2000


class AgentError(Exception):
    """Base class for all errors raised by memagent."""


class ConfigError(AgentError):
    """Missing or invalid run configuration. Fatal to the run."""


class TransportError(AgentError):
    """Network-level failure talking to the knowledge service or model provider."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class TransportTimeout(TransportError):
    """The call exceeded its wall-clock deadline."""


class HttpStatusError(TransportError):
    """Non-success HTTP status; carries the status and a truncated body."""

    def __init__(self, status: int, reason: str = "", body: str = "", url: Optional[str] = None):
        self.status = status
        self.reason = reason
        self.body = (body or "")[:BODY_PREVIEW_CHARS]
        message = f"HTTP {status} {reason}".rstrip()
        if self.body:
            message = f"{message}: {self.body}"
        super().__init__(message, url=url)


class ProviderError(AgentError):
    """The model provider returned an unusable response or failed."""


class ToolError(AgentError):
    """Failure inside a single tool call. Never fatal to the run."""

    kind = "internal"


class ToolInputError(ToolError):
    """The model supplied invalid arguments."""

    kind = "input"


class ToolRejectedError(ToolError):
    """The call was well-formed but refused by a business rule."""

    kind = "rejected"
