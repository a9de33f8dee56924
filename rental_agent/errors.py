"""Error taxonomy shared by the search, session and chat layers."""

from typing import Optional


class RentalAgentError(Exception):
    """Base class for every error raised by rental_agent."""


class ValidationError(RentalAgentError):
    """Caller input rejected before any I/O happens."""


class UpstreamError(RentalAgentError):
    """An external service (embeddings, vector index, store, LLM) failed."""

    def __init__(self, component: str, message: str, retryable: bool = False) -> None:
        super().__init__(f"{component}: {message}")
        self.component = component
        self.retryable = retryable


class PartialExtractionError(RentalAgentError):
    """A tool-call argument payload could not be parsed into its typed form."""

    def __init__(self, tool_name: str, reason: str, raw: Optional[str] = None) -> None:
        super().__init__(f"{tool_name}: {reason}")
        self.tool_name = tool_name
        self.reason = reason
        self.raw = raw
