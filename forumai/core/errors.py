from __future__ import annotations


class ForumAIError(Exception):
    """Base error for forumai."""


class TransportError(ForumAIError):
    """Remote call failed or timed out; the next wake-up may retry."""


class AuthError(ForumAIError):
    """Credentials were rejected or revoked; the operator must reconnect."""


class InsufficientCreditsError(ForumAIError):
    """Planned cost exceeds the remaining credit balance."""

    def __init__(self, message: str, *, requested: int, available: int) -> None:
        super().__init__(message)
        self.requested = requested
        self.available = available


class DuplicateContentError(ForumAIError):
    """Generated content is too similar to recently created content."""

    def __init__(self, message: str, *, best_score: float, matched_id: str | None = None) -> None:
        super().__init__(message)
        self.best_score = best_score
        self.matched_id = matched_id


class ValidationError(ForumAIError):
    """Malformed configuration or request rejected before any side effect."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class QueueBusyError(ForumAIError):
    """The indexing queue lock could not be acquired in time."""


class IllegalTransitionError(ForumAIError):
    """A job or task status change would move backwards."""


class ServiceUnavailableError(ForumAIError):
    """The tenant is not in a state that allows metered operations."""


class IntegrationUnavailableError(TransportError):
    """Circuit breaker is open for a remote integration."""
