"""Exception hierarchy shared by the store, rotation engine and dispatch."""

from __future__ import annotations


class ConvkeeperError(Exception):
    """Base class for all convkeeper errors."""


class PersistenceError(ConvkeeperError):
    """A session store operation failed. Fatal to the current operation."""


class SummarizationError(ConvkeeperError):
    """The summarizer or condenser failed or returned unusable output."""


class AgentInterruptedError(ConvkeeperError):
    """The agent run was cancelled at the user's request."""

    def __init__(self) -> None:
        super().__init__("Agent interrupted by user")


class RateLimitError(ConvkeeperError):
    """The agent runtime reported throttling.

    ``reset_at`` is the epoch time (seconds) at which the limit lifts, or
    None when the runtime did not say.
    """

    def __init__(self, reset_at: float | None = None) -> None:
        self.reset_at = reset_at
        super().__init__(f"Rate limit exceeded (reset_at={reset_at})")


class AgentCrashedError(ConvkeeperError):
    """The agent process died mid-run. Retryable once without resume."""
