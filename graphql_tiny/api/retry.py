"""
Retry classification for GraphQL requests.

A request attempt produces an ``Outcome`` (a transport failure or an HTTP
response). ``classify`` turns it into a ``Classification``:

- **Success**: status 200 without an ``errors`` field
- **RetryGeneric**: the failure matches a configured ``RetryRule``;
  wait via ``BackoffScheduler``
- **RetryRateLimited**: the server reported ``THROTTLED`` with usable cost
  telemetry; wait via ``rate_limit_wait``. Independent of the rules
- **Terminal**: anything else; raise the carried error

Rules are matched in a fixed order: transport category, then HTTP status
(exact code or ``NXX`` family), then application error code.

One ``AttemptState`` is created per ``execute`` call and shared by all
categories, so the budget never resets when the failure type changes.
"""

from __future__ import annotations

import json
import random
import re
import socket
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Union

import httpx

from graphql_tiny.api.errors import (
    ConnectionError,
    GraphQLError,
    GraphQLTinyError,
    HTTPError,
    RateLimitError,
)

THROTTLED_CODE = "THROTTLED"
SERVER_ERROR_CODE = "INTERNAL_SERVER_ERROR"

_STATUS_CLASS_RE = re.compile(r"^([1-5])XX$", re.IGNORECASE)
_STATUS_EXACT_RE = re.compile(r"^[1-5]\d\d$")
_TRANSPORT_PREFIX = "transport:"


class TransportErrorCategory(str, Enum):
    CONNECTION = "connection"
    DNS = "dns"
    CONNECT_TIMEOUT = "connect_timeout"
    READ_TIMEOUT = "read_timeout"
    WRITE_TIMEOUT = "write_timeout"
    POOL_TIMEOUT = "pool_timeout"
    PROTOCOL = "protocol"
    TLS = "tls"


@dataclass(frozen=True)
class HttpStatusClass:
    """Status family such as ``5XX``; ``digit`` is the leading digit."""
    digit: int

    def __str__(self) -> str:
        return f"{self.digit}XX"


@dataclass(frozen=True)
class HttpStatusExact:
    code: int

    def __str__(self) -> str:
        return str(self.code)


@dataclass(frozen=True)
class ApplicationErrorCode:
    code: str

    def __str__(self) -> str:
        return self.code


RetryRule = Union[HttpStatusClass, HttpStatusExact, ApplicationErrorCode, TransportErrorCategory]

DEFAULT_RETRY_RULES: tuple[str, ...] = tuple(
    f"{_TRANSPORT_PREFIX}{category.value}" for category in TransportErrorCategory
) + ("5XX", "429")


def parse_retry_rule(value: Any) -> RetryRule:
    """
    Convert a configured value to a ``RetryRule``.

    ``"5XX"`` is a status family, ``"503"`` or ``503`` an exact status,
    ``"transport:read_timeout"`` a transport category; any other string is
    an application error code.
    """
    if isinstance(value, (HttpStatusClass, HttpStatusExact, ApplicationErrorCode, TransportErrorCategory)):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid retry rule: {value!r}")
    if isinstance(value, int):
        if not 100 <= value <= 599:
            raise ValueError(f"Invalid HTTP status retry rule: {value}")
        return HttpStatusExact(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid retry rule: {value!r}")

    text = value.strip()
    match = _STATUS_CLASS_RE.match(text)
    if match:
        return HttpStatusClass(int(match.group(1)))
    if _STATUS_EXACT_RE.match(text):
        return HttpStatusExact(int(text))
    if text.lower().startswith(_TRANSPORT_PREFIX):
        name = text[len(_TRANSPORT_PREFIX):].strip().lower()
        try:
            return TransportErrorCategory(name)
        except ValueError as exc:
            raise ValueError(f"Unknown transport error category: {name}") from exc
    return ApplicationErrorCode(text)


def parse_retry_rules(values: Iterable[Any]) -> frozenset[RetryRule]:
    return frozenset(parse_retry_rule(value) for value in values)


# Outcomes


@dataclass(frozen=True)
class TransportFailure:
    category: TransportErrorCategory
    cause: Exception


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str


Outcome = Union[TransportFailure, HttpResponse]


def categorize_transport_error(exc: httpx.RequestError) -> TransportErrorCategory:
    """Map an httpx request exception to its retry category."""
    if isinstance(exc, httpx.ConnectTimeout):
        return TransportErrorCategory.CONNECT_TIMEOUT
    if isinstance(exc, httpx.ReadTimeout):
        return TransportErrorCategory.READ_TIMEOUT
    if isinstance(exc, httpx.WriteTimeout):
        return TransportErrorCategory.WRITE_TIMEOUT
    if isinstance(exc, httpx.PoolTimeout):
        return TransportErrorCategory.POOL_TIMEOUT
    # undecodable bodies and redirect loops are not transport errors in httpx
    if isinstance(exc, (httpx.ProtocolError, httpx.DecodingError, httpx.TooManyRedirects)):
        return TransportErrorCategory.PROTOCOL

    # httpx wraps socket/ssl errors, so look down the chain
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLError):
            return TransportErrorCategory.TLS
        if isinstance(current, socket.gaierror):
            return TransportErrorCategory.DNS
        current = current.__cause__ or current.__context__
    return TransportErrorCategory.CONNECTION


# Cost telemetry


@dataclass(frozen=True)
class ThrottleTelemetry:
    requested_cost: float
    currently_available: float
    restore_rate: float
    maximum_available: float | None = None
    actual_cost: float | None = None

    @classmethod
    def from_response(cls, payload: Any) -> "ThrottleTelemetry | None":
        """Read ``extensions.cost``; return None when the fields are missing or malformed."""
        if not isinstance(payload, dict):
            return None
        extensions = payload.get("extensions")
        cost = extensions.get("cost") if isinstance(extensions, dict) else None
        if not isinstance(cost, dict):
            return None
        status = cost.get("throttleStatus")
        if not isinstance(status, dict):
            return None

        requested = _number(cost.get("requestedQueryCost"))
        available = _number(status.get("currentlyAvailable"))
        restore_rate = _number(status.get("restoreRate"))
        if requested is None or available is None or restore_rate is None:
            return None
        if requested < 0 or available < 0 or restore_rate < 0:
            return None

        return cls(
            requested_cost=requested,
            currently_available=available,
            restore_rate=restore_rate,
            maximum_available=_number(status.get("maximumAvailable")),
            actual_cost=_number(cost.get("actualQueryCost")),
        )


def actual_query_cost(payload: Any) -> float | None:
    """Return ``extensions.cost.actualQueryCost``; present only when the query ran."""
    if not isinstance(payload, dict):
        return None
    extensions = payload.get("extensions")
    cost = extensions.get("cost") if isinstance(extensions, dict) else None
    if not isinstance(cost, dict):
        return None
    return _number(cost.get("actualQueryCost"))


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def rate_limit_wait(telemetry: ThrottleTelemetry | None) -> float | None:
    """
    Seconds until the server has restored enough budget for the query.

    Returns None when the wait cannot be computed (no telemetry or a zero
    restore rate). Callers must treat that as a terminal rate-limit error.
    """
    if telemetry is None or telemetry.restore_rate <= 0:
        return None
    return max(0.0, (telemetry.requested_cost - telemetry.currently_available) / telemetry.restore_rate)


# Backoff


class BackoffScheduler:
    def __init__(
        self,
        base_delay_s: float,
        max_delay_s: float,
        multiplier: float = 2.0,
        jitter: bool = False,
        *,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if multiplier <= 0:
            raise ValueError("multiplier must be positive")
        self._base = base_delay_s
        self._max = max_delay_s
        self._multiplier = multiplier
        self._jitter = jitter
        self._rng = rng

    def delay(self, attempts_used: int) -> float:
        exponent = max(attempts_used, 1) - 1
        try:
            raw = self._base * (self._multiplier ** exponent)
        except OverflowError:
            raw = self._max
        capped = min(raw, self._max)
        if self._jitter:
            capped *= self._rng()
        return capped


@dataclass
class AttemptState:
    """Attempt budget for a single ``execute`` call."""
    max_attempts: int
    attempts_used: int = 0

    def consume(self) -> bool:
        """Record one failed attempt; True when the budget is now exhausted."""
        self.attempts_used += 1
        return self.attempts_used >= self.max_attempts

    @property
    def exhausted_after_next(self) -> bool:
        return self.attempts_used + 1 >= self.max_attempts


# Classification


@dataclass(frozen=True)
class Success:
    response: Any


@dataclass(frozen=True)
class Terminal:
    error: GraphQLTinyError


@dataclass(frozen=True)
class RetryGeneric:
    """Retryable failure; ``error`` is raised if the budget runs out."""
    error: GraphQLTinyError
    reason: str


@dataclass(frozen=True)
class RetryRateLimited:
    telemetry: ThrottleTelemetry
    wait_s: float
    error: RateLimitError


Classification = Union[Success, Terminal, RetryGeneric, RetryRateLimited]


def status_matches(status: int, rules: frozenset[RetryRule]) -> bool:
    return HttpStatusExact(status) in rules or HttpStatusClass(status // 100) in rules


def error_message(errors: Any) -> str:
    """Join GraphQL error messages as ``"<message> at a.b.c"``, comma separated."""
    if not isinstance(errors, list):
        return str(errors)
    messages = []
    for error in errors:
        if not isinstance(error, dict):
            messages.append(str(error))
            continue
        message = str(error.get("message", ""))
        path = error.get("path")
        if path:
            message += " at " + ".".join(str(part) for part in path)
        messages.append(message)
    return ", ".join(messages)


def _first_error_code(errors: Any) -> str | None:
    if not isinstance(errors, list) or not errors:
        return None
    first = errors[0]
    if not isinstance(first, dict):
        return None
    extensions = first.get("extensions")
    if not isinstance(extensions, dict):
        return None
    code = extensions.get("code")
    return code if isinstance(code, str) else None


def classify(
    outcome: Outcome,
    rules: frozenset[RetryRule],
    *,
    budget_exhausted: bool = False,
    target: str = "server",
) -> Classification:
    """
    Decide what to do with one attempt's outcome.

    Args:
        outcome: Result of the transport call.
        rules: Configured retry rules.
        budget_exhausted: True when this attempt is the last one allowed.
        target: Name used in error messages (endpoint or shop domain).
    """
    if isinstance(outcome, TransportFailure):
        error = ConnectionError(
            f"request to {target} failed: {outcome.cause}",
            category=outcome.category.value,
        )
        if outcome.category in rules:
            return RetryGeneric(error, reason=outcome.category.value)
        return Terminal(error)

    prefix = f"failed to execute query for {target}: "

    if outcome.status != 200:
        error = HTTPError(
            f"{prefix}HTTP {outcome.status}",
            status_code=outcome.status,
            response_text=outcome.body,
        )
        if status_matches(outcome.status, rules):
            return RetryGeneric(error, reason=f"http_{outcome.status}")
        return Terminal(error)

    try:
        payload = json.loads(outcome.body)
    except ValueError as exc:
        return Terminal(
            GraphQLTinyError(
                f"{prefix}invalid JSON response: {exc}",
                status_code=outcome.status,
                response_text=outcome.body,
            )
        )

    if not isinstance(payload, dict) or "errors" not in payload:
        return Success(payload)

    errors = payload["errors"]
    message = prefix + error_message(errors)
    code = _first_error_code(errors)

    if code == THROTTLED_CODE:
        rate_limited = RateLimitError(message, status_code=outcome.status, payload=payload)
        # actualQueryCost means the query ran, so it was not throttled
        if actual_query_cost(payload) is None:
            telemetry = ThrottleTelemetry.from_response(payload)
            if budget_exhausted:
                return Terminal(rate_limited)
            wait_s = rate_limit_wait(telemetry)
            if telemetry is None or wait_s is None:
                return Terminal(rate_limited)
            return RetryRateLimited(telemetry, wait_s, rate_limited)
        fallback: GraphQLError = rate_limited
    else:
        fallback = GraphQLError(message, status_code=outcome.status, payload=payload)

    if code is not None and (
        ApplicationErrorCode(code) in rules
        or (code == SERVER_ERROR_CODE and HttpStatusClass(5) in rules)
    ):
        return RetryGeneric(fallback, reason=code.lower())
    return Terminal(fallback)
