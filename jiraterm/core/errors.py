"""Error taxonomy surfaced by the Jira access layer.

Every error raised past the transport carries the operation that failed and
the ticket key or query it was about, so the UI can render a precise message
without ever seeing an httpx exception.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class JiraError(Exception):
    """Base class for every classified failure."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        target: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.target = target
        self.status_code = status_code
        self.attempts = 1

    def with_context(self, operation: str, target: Optional[str]) -> "JiraError":
        """Attach the originating operation unless a deeper layer already did."""
        if self.operation is None:
            self.operation = operation
        if self.target is None:
            self.target = target
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            where = self.operation
            if self.target:
                where = f"{where} {self.target}"
            parts.append(f"({where})")
        if self.attempts > 1:
            parts.append(f"after {self.attempts} attempts")
        return " ".join(parts)


class NetworkError(JiraError):
    transient = True


class RateLimited(JiraError):
    transient = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kw) -> None:
        kw.setdefault("status_code", 429)
        super().__init__(message, **kw)
        self.retry_after = retry_after


class ServerError(JiraError):
    transient = True


class AuthError(JiraError):
    pass


class NotFoundError(JiraError):
    pass


class ValidationError(JiraError):
    """400 from the server, or a payload rejected before it was sent."""

    def __init__(
        self,
        message: str,
        *,
        field_errors: Optional[Dict[str, str]] = None,
        messages: Optional[List[str]] = None,
        **kw,
    ) -> None:
        super().__init__(message, **kw)
        self.field_errors: Dict[str, str] = dict(field_errors or {})
        self.messages: List[str] = list(messages or [])


class ApiError(JiraError):
    """Any other non-retryable HTTP status."""


class ParseError(JiraError):
    pass


class InvalidTransition(JiraError):
    def __init__(self, message: str, *, transition_id: str, **kw) -> None:
        super().__init__(message, **kw)
        self.transition_id = transition_id


class VersionConflict(JiraError):
    def __init__(self, message: str, *, expected: int, actual: int, **kw) -> None:
        super().__init__(message, **kw)
        self.expected = expected
        self.actual = actual


class ConfigError(JiraError):
    pass
