from __future__ import annotations

import json
import logging
import platform
import random
import re
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, NoReturn

import httpx

from graphql_tiny import __version__
from graphql_tiny.api.errors import ArgumentError, DeadlineExceededError, GraphQLTinyError
from graphql_tiny.api.pager import Pager
from graphql_tiny.api.retry import (
    AttemptState,
    BackoffScheduler,
    HttpResponse,
    Outcome,
    RetryGeneric,
    RetryRateLimited,
    Success,
    Terminal,
    TransportFailure,
    categorize_transport_error,
    classify,
)
from graphql_tiny.config import ClientConfig, RetryConfig
from graphql_tiny.obs.logging import log_event

USER_AGENT = f"graphql_tiny v{__version__} (Python v{platform.python_version()})"

SHOPIFY_DOMAIN = ".myshopify.com"
ENDPOINT = "https://{domain}/admin/api{version}/graphql.json"

ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"
QUERY_COST_HEADER = "X-GraphQL-Cost-Include-Fields"

DEFAULT_HEADERS = {"Content-Type": "application/json"}


@dataclass
class ClientMetrics:
    http_requests_total: dict[tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))
    http_retries_total: dict[tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))
    http_latency_ms: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    rate_limit_wait_s: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_request(self, endpoint: str, status: str, latency_ms: float) -> None:
        with self._lock:
            self.http_requests_total[(endpoint, status)] += 1
            self.http_latency_ms[endpoint].append(latency_ms)

    def record_retry(self, endpoint: str, reason: str) -> None:
        with self._lock:
            self.http_retries_total[(endpoint, reason)] += 1

    def record_rate_limit_wait(self, wait_s: float) -> None:
        with self._lock:
            self.rate_limit_wait_s += wait_s


def shopify_domain(shop: str) -> str:
    domain = re.sub(r"\Ahttps?://", "", shop.strip(), flags=re.IGNORECASE).rstrip("/")
    if not domain.endswith(SHOPIFY_DOMAIN):
        domain += SHOPIFY_DOMAIN
    return domain


class GraphQLClient:
    """
    Client for a GraphQL endpoint with built-in retries.

    ``execute`` sends one logical query and returns the decoded response
    unmodified. Failures matching the retry rules are retried with
    exponential backoff; throttled responses wait for the time the server's
    cost telemetry says is needed. All retry categories share one attempt
    budget per call.
    """

    def __init__(
        self,
        shop: str | None,
        token: str | None,
        retry: RetryConfig | None = None,
        *,
        api_version: str | None = None,
        timeout_s: float = 30,
        debug: bool = False,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if not shop:
            raise ArgumentError("shop required")
        if not token:
            raise ArgumentError("token required")

        self._retry = retry or RetryConfig()
        self._rules = self._retry.retry_rules()
        self._max_attempts = self._retry.attempt_budget
        self._backoff = BackoffScheduler(
            self._retry.base_delay_s,
            self._retry.max_delay_s,
            self._retry.multiplier,
            self._retry.jitter,
            rng=rng,
        )
        self._debug = debug
        self._logger = logger or logging.getLogger(__name__)
        self._run_id = run_id or "n/a"
        self._sleep = sleep
        self._metrics = ClientMetrics()

        self._domain = shopify_domain(shop)
        version = (api_version or "").strip()
        self._endpoint = ENDPOINT.format(domain=self._domain, version=f"/{version}" if version else "")

        self._headers = {**DEFAULT_HEADERS, "User-Agent": USER_AGENT, ACCESS_TOKEN_HEADER: token}
        if self._retry.enabled:
            self._headers[QUERY_COST_HEADER] = "true"

        timeout = httpx.Timeout(
            connect=timeout_s,
            read=timeout_s,
            write=timeout_s,
            pool=timeout_s,
        )
        self._client = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> "GraphQLClient":
        return cls(
            config.shop,
            config.token,
            config.retry,
            api_version=config.api_version,
            timeout_s=config.timeout_s,
            debug=config.debug,
            **kwargs,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def metrics(self) -> ClientMetrics:
        return self._metrics

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GraphQLClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def paginate(
        self,
        direction: str = "after",
        *,
        locator: Any = None,
        variable: str | None = None,
        max_pages: int | None = None,
    ) -> Pager:
        """
        Create a pager for a cursor-paginated query.

        Args:
            direction: ``"after"`` (forward) or ``"before"`` (backward).
            locator: Where the ``pageInfo`` block lives. None searches the
                whole response; a list of keys is a path (``"data"`` and
                ``"pageInfo"`` are added when missing); a callable receives
                the response and returns the ``pageInfo`` block.
            variable: Query variable receiving the cursor. Defaults to the
                direction name.
            max_pages: Optional cap on the number of pages fetched.
        """
        return Pager(self, direction, locator=locator, variable=variable, max_pages=max_pages)

    def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        deadline_ts: float | None = None,
    ) -> Any:
        """
        Execute a GraphQL query or mutation.

        Args:
            query: Query or mutation text.
            variables: Optional variables for the query.
            deadline_ts: Optional ``time.monotonic()`` deadline, checked before
                each send and each sleep.

        Returns:
            The decoded response, unmodified.

        Raises:
            ArgumentError: ``query`` is empty.
            ConnectionError, HTTPError: retries exhausted or failure not retryable.
            RateLimitError: still throttled when out of attempts, or the wait
                cannot be computed.
            GraphQLError: the response contains errors.
            DeadlineExceededError: ``deadline_ts`` passed.
        """
        if not isinstance(query, str) or not query.strip():
            raise ArgumentError("query required")

        body = {"query": query}
        if variables is not None:
            body["variables"] = variables
        content = json.dumps(body)

        state = AttemptState(max_attempts=self._max_attempts)

        while True:
            self._check_deadline(deadline_ts, "send")
            attempt = state.attempts_used + 1
            outcome = self._send(content, attempt)
            result = classify(
                outcome,
                self._rules,
                budget_exhausted=state.exhausted_after_next,
                target=self._domain,
            )

            if isinstance(result, Success):
                return result.response

            if isinstance(result, Terminal):
                self._log_fail(type(result.error).__name__, attempt)
                self._raise(result.error, outcome)

            exhausted = state.consume()

            if isinstance(result, RetryRateLimited):
                if exhausted:
                    self._log_fail(type(result.error).__name__, attempt)
                    raise result.error
                telemetry = result.telemetry
                log_event(
                    self._logger,
                    logging.WARNING,
                    "rate_limited",
                    "Throttled by server; waiting for cost budget to restore",
                    endpoint=self._endpoint,
                    attempt=attempt,
                    wait_s=round(result.wait_s, 3),
                    requested_cost=telemetry.requested_cost,
                    currently_available=telemetry.currently_available,
                    restore_rate=telemetry.restore_rate,
                    run_id=self._run_id,
                )
                self._metrics.record_retry(self._endpoint, "rate_limited")
                self._metrics.record_rate_limit_wait(result.wait_s)
                self._wait(result.wait_s, deadline_ts)
                continue

            if isinstance(result, RetryGeneric):
                if exhausted:
                    self._log_fail(type(result.error).__name__, attempt)
                    self._raise(result.error, outcome)
                delay_s = self._backoff.delay(state.attempts_used)
                log_event(
                    self._logger,
                    logging.WARNING,
                    "retry_scheduled",
                    "Retryable failure; backing off",
                    endpoint=self._endpoint,
                    attempt=attempt,
                    reason=result.reason,
                    delay_s=round(delay_s, 3),
                    run_id=self._run_id,
                )
                self._metrics.record_retry(self._endpoint, result.reason)
                self._wait(delay_s, deadline_ts)
                continue

            raise TypeError(f"Unexpected classification: {result!r}")

    def _send(self, content: str, attempt: int) -> Outcome:
        if self._debug:
            log_event(
                self._logger,
                logging.DEBUG,
                "http_debug",
                f"POST {self._endpoint}",
                body=content,
                attempt=attempt,
                run_id=self._run_id,
            )

        start = time.monotonic()
        try:
            response = self._client.post(self._endpoint, content=content, headers=self._headers)
        except httpx.RequestError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            category = categorize_transport_error(exc)
            self._metrics.record_request(self._endpoint, category.value, latency_ms)
            log_event(
                self._logger,
                logging.WARNING,
                "http_request",
                f"POST {self._endpoint}",
                endpoint=self._endpoint,
                status=None,
                error_category=category.value,
                attempt=attempt,
                latency_ms=round(latency_ms, 2),
                run_id=self._run_id,
            )
            return TransportFailure(category, exc)

        latency_ms = (time.monotonic() - start) * 1000
        self._metrics.record_request(self._endpoint, str(response.status_code), latency_ms)
        log_event(
            self._logger,
            logging.INFO,
            "http_request",
            f"POST {self._endpoint}",
            endpoint=self._endpoint,
            status=response.status_code,
            attempt=attempt,
            latency_ms=round(latency_ms, 2),
            run_id=self._run_id,
        )
        if self._debug:
            log_event(
                self._logger,
                logging.DEBUG,
                "http_debug",
                f"Response from {self._endpoint}",
                status=response.status_code,
                body=response.text,
                attempt=attempt,
                run_id=self._run_id,
            )
        return HttpResponse(response.status_code, response.text)

    def _wait(self, delay_s: float, deadline_ts: float | None) -> None:
        self._check_deadline(deadline_ts, "sleep")
        if delay_s > 0:
            self._sleep(delay_s)

    def _check_deadline(self, deadline_ts: float | None, point: str) -> None:
        if deadline_ts is not None and time.monotonic() >= deadline_ts:
            self._log_fail("DeadlineExceededError", None)
            raise DeadlineExceededError(f"deadline exceeded before {point} to {self._endpoint}")

    @staticmethod
    def _raise(error: GraphQLTinyError, outcome: Outcome) -> NoReturn:
        if isinstance(outcome, TransportFailure):
            raise error from outcome.cause
        raise error

    def _log_fail(self, error_type: str, attempt: int | None) -> None:
        log_event(
            self._logger,
            logging.ERROR,
            "http_fail",
            f"Request failed for {self._endpoint}",
            endpoint=self._endpoint,
            error_type=error_type,
            attempt=attempt,
            run_id=self._run_id,
        )

