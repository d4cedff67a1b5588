"""
GraphQL client error taxonomy.

Every failure a caller can observe from ``GraphQLClient.execute`` is one
of the terminal errors below. Intermediate failures that were retried are
never surfaced; the raised error carries the last observed cause.

Error Classification:
    Transport failure      → ConnectionError (after retries)
    HTTP status != 200     → HTTPError (after retries)
    errors[] in body       → GraphQLError
    errors[].code THROTTLED → RateLimitError
    Bad caller input       → ArgumentError (never retried)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ArgumentError(ValueError):
    """Raised on caller misuse: empty query, missing pagination variable, bad locator."""


@dataclass(frozen=True)
class GraphQLTinyError(Exception):
    """
    Base exception for all terminal client errors.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code (None for non-HTTP errors).
        response_text: Raw response body text.
        payload: Parsed response payload if available.
    """
    message: str
    status_code: int | None = None
    response_text: str | None = None
    payload: Any | None = None

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.response_text:
            parts.append(f"response={self.response_text}")
        return " | ".join(parts)


@dataclass(frozen=True)
class ConnectionError(GraphQLTinyError):
    """
    Transport failure: refused/reset connection, DNS, timeout, TLS or protocol error.

    ``category`` is the transport category value that was observed last.
    """
    category: str | None = None


class HTTPError(GraphQLTinyError):
    """Response status was not 200."""

    @property
    def code(self) -> int | None:
        return self.status_code


class GraphQLError(GraphQLTinyError):
    """Response contained an ``errors`` list that is not a rate-limit error."""

    @property
    def response(self) -> Any | None:
        return self.payload


class RateLimitError(GraphQLError):
    """
    Throttled by the server.

    Raised when throttled with no attempts remaining, or when the server's
    throttle telemetry does not allow computing a wait.
    """
    pass


class DeadlineExceededError(GraphQLTinyError):
    """The caller's deadline passed before the next send or sleep."""
    pass
