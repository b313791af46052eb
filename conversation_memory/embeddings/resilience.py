"""Retry and circuit breaking for calls to the embedding service.

The abbreviation pipeline is the only caller that retries: a failed
embedding only delays semantic search for one conversation, so retries
are few and short, and a tripped breaker makes the rest of a sweep fail
fast instead of hammering a service that is down.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import openai

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry with exponential backoff."""

    max_retries: int = 2
    backoff_base: float = 0.5  # seconds
    backoff_max: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[BaseException], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
        openai.APIConnectionError,
    )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retrying after ``attempt`` (0-based) failed."""
        if retry_after is not None:
            return min(retry_after, self.backoff_max)
        return min(self.backoff_base * (self.backoff_multiplier**attempt), self.backoff_max)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Fails fast after repeated retryable failures.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls are rejected for ``reset_timeout`` seconds. Then one probe is let
    through: success closes the circuit, failure opens it again.
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failures: int = field(default=0, init=False, repr=False)
    _opened_at: float = field(default=0.0, init=False, repr=False)
    _trips: int = field(default=0, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and time.monotonic() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("Embedding circuit half-open, allowing a probe")
        return self._state

    def allow_request(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Embedding circuit closed, service recovered")
        self._failures = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                self._trips += 1
                logger.warning(
                    "Embedding circuit open after %d failure(s) (trip #%d), probing in %.0fs",
                    self._failures,
                    self._trips,
                    self.reset_timeout,
                )
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self._failures,
            "total_trips": self._trips,
        }


class CircuitOpenError(Exception):
    """Raised when the circuit breaker is open and calls are rejected."""


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code
    status = getattr(exc, "status_code", None)
    return int(status) if isinstance(status, int) else None


def _retry_after(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    circuit: CircuitBreaker | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn`` with retries on transient errors.

    Only retryable failures count toward the circuit breaker; bad input and
    auth errors are permanent and raised on the first attempt.

    Raises:
        CircuitOpenError: If the circuit breaker rejects the call
        Exception: The last error once retries are exhausted
    """
    cfg = config or RetryConfig()
    ctx = f" [{context_msg}]" if context_msg else ""

    attempt = 0
    while True:
        if circuit is not None and not circuit.allow_request():
            raise CircuitOpenError(f"Embedding circuit is open{ctx}")

        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            status = _status_code(exc)
            retryable = isinstance(exc, cfg.retryable_exceptions) or (
                status is not None and status in cfg.retryable_status_codes
            )
            if circuit is not None and retryable:
                circuit.record_failure()
            if not retryable or attempt >= cfg.max_retries:
                raise

            delay = cfg.delay_for(attempt, _retry_after(exc))
            logger.warning(
                "Retrying after error (attempt %d/%d, status=%s, delay=%.1fs)%s: %s",
                attempt + 1,
                cfg.max_retries + 1,
                status,
                delay,
                ctx,
                exc,
            )
            await asyncio.sleep(delay)
            attempt += 1
        else:
            if circuit is not None:
                circuit.record_success()
            return result
