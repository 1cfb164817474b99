"""
NLA Oracle — Retry with Backoff for Ledger Reads

Wraps idempotent ledger reads (event polling, attestation lookups) with:
  - retry on transient failures (timeout, rate limit, 5xx, connection)
  - exponential backoff with jitter between attempts
  - a circuit breaker: N consecutive failed calls → reject until reset

Writes are never retried here: a resubmitted decision could race the
original transaction. Backend (LLM) calls are not retried either; one
arbitration attempt is one request.

Usage:
    from nla.retry import call_with_retry, RetryPolicy

    polled = call_with_retry(
        lambda: ledger.poll_arbitration_requests(oracle, cursor),
        policy=RetryPolicy(max_attempts=3),
        op_name="poll",
    )
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

logger = logging.getLogger("nla.retry")

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt + jitter
    backoff_max: float = 10.0
    jitter: float = 0.2             # ±20%

    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 60.0

    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
    )
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    @classmethod
    def from_dict(cls, cfg: dict[str, Any] | None) -> RetryPolicy:
        cfg = cfg or {}
        default = cls()
        return cls(
            max_attempts=int(cfg.get("max_attempts", default.max_attempts)),
            backoff_base=float(cfg.get("backoff_base", default.backoff_base)),
            backoff_max=float(cfg.get("backoff_max", default.backoff_max)),
            jitter=float(cfg.get("jitter", default.jitter)),
            circuit_breaker_threshold=int(cfg.get(
                "circuit_breaker_threshold", default.circuit_breaker_threshold)),
            circuit_breaker_reset_seconds=float(cfg.get(
                "circuit_breaker_reset_seconds", default.circuit_breaker_reset_seconds)),
        )


DEFAULT_POLICY = RetryPolicy()


# ═══════════════════════════════════════════════════════════════════
# Circuit Breaker
# ═══════════════════════════════════════════════════════════════════

class CircuitBreakerOpen(Exception):
    """Raised when too many consecutive calls have failed."""
    pass


class CircuitBreaker:
    """
    States:
      closed     normal operation, failures increment counter
      open       all calls rejected until reset_seconds elapse
      half_open  one trial call allowed; success → closed, failure → open
    """

    def __init__(self, threshold: int = 5, reset_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._last_failure_time = 0.0
        self._state = "closed"
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "open":
                if self._clock() - self._last_failure_time >= self.reset_seconds:
                    self._state = "half_open"
            return self._state

    def check(self):
        if self.state == "open":
            remaining = self.reset_seconds - (self._clock() - self._last_failure_time)
            raise CircuitBreakerOpen(
                f"Circuit breaker open: {self._failures} consecutive failures. "
                f"Resets in {remaining:.0f}s"
            )

    def record_success(self):
        with self._lock:
            self._failures = 0
            self._state = "closed"

    def record_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._failures >= self.threshold:
                self._state = "open"

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "closed"
            self._last_failure_time = 0.0


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def is_retryable(error: BaseException, policy: RetryPolicy = DEFAULT_POLICY) -> bool:
    if isinstance(error, policy.retryable_exceptions):
        return True

    err_str = str(error).lower()

    if "401" in err_str or "403" in err_str or "unauthorized" in err_str or "forbidden" in err_str:
        return False

    if "429" in err_str or "rate limit" in err_str or "too many requests" in err_str:
        return True

    for code in policy.retryable_status_codes:
        if str(code) in err_str:
            return True

    if any(term in err_str for term in ["timeout", "timed out", "connection", "unavailable"]):
        return True

    return False


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    return max(0.0, capped + random.uniform(-jitter_range, jitter_range))


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    op_name: str = "",
    breaker: CircuitBreaker | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, a non-retryable error occurs, or
    attempts run out. The last error is re-raised unchanged.
    """
    if policy is None:
        policy = DEFAULT_POLICY
    if breaker is not None:
        breaker.check()

    last_error: BaseException | None = None
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            result = fn()
        except Exception as e:
            last_error = e
            if not is_retryable(e, policy):
                logger.error("Non-retryable error (op=%s): %s", op_name, str(e)[:200])
                if breaker is not None:
                    breaker.record_failure()
                raise
            logger.warning(
                "Retryable error (attempt %d/%d, op=%s): %s",
                attempt + 1, attempts, op_name, str(e)[:200],
            )
            if attempt < attempts - 1:
                sleep_fn(calculate_backoff(attempt, policy))
            continue

        if breaker is not None:
            breaker.record_success()
        if attempt:
            logger.info("Succeeded after %d attempts (op=%s)", attempt + 1, op_name)
        return result

    if breaker is not None:
        breaker.record_failure()
    logger.error("All %d attempts exhausted (op=%s)", attempts, op_name)
    raise last_error
