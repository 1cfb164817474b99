"""
NLA Oracle — Retry with Backoff Tests

Tests:
  - Retry on timeout / connection errors
  - No retry on auth errors
  - Attempts exhausted → last error re-raised
  - Backoff grows and is capped
  - Circuit breaker opens, rejects, half-opens after reset
  - Policy built from config dict
"""

import os
import sys
import unittest
from unittest.mock import MagicMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from nla.retry import (
    CircuitBreaker,
    CircuitBreakerOpen,
    RetryPolicy,
    calculate_backoff,
    call_with_retry,
    is_retryable,
)


def _no_sleep(_seconds):
    pass


class TestRetryable(unittest.TestCase):

    def test_exception_types(self):
        self.assertTrue(is_retryable(TimeoutError("x")))
        self.assertTrue(is_retryable(ConnectionError("x")))

    def test_message_patterns(self):
        self.assertTrue(is_retryable(RuntimeError("HTTP 503 Service Unavailable")))
        self.assertTrue(is_retryable(RuntimeError("429 Too Many Requests")))
        self.assertTrue(is_retryable(RuntimeError("read timed out")))

    def test_auth_not_retryable(self):
        self.assertFalse(is_retryable(RuntimeError("401 Unauthorized")))
        self.assertFalse(is_retryable(RuntimeError("403 Forbidden")))

    def test_plain_error_not_retryable(self):
        self.assertFalse(is_retryable(ValueError("bad block range")))


class TestCallWithRetry(unittest.TestCase):

    def test_success_first_try(self):
        fn = MagicMock(return_value=42)
        self.assertEqual(call_with_retry(fn, sleep_fn=_no_sleep), 42)
        self.assertEqual(fn.call_count, 1)

    def test_retry_then_success(self):
        fn = MagicMock(side_effect=[TimeoutError("t1"), ConnectionError("c2"), "ok"])
        result = call_with_retry(fn, RetryPolicy(max_attempts=3), sleep_fn=_no_sleep)
        self.assertEqual(result, "ok")
        self.assertEqual(fn.call_count, 3)

    def test_exhausted_reraises_last(self):
        errors = [TimeoutError("first"), TimeoutError("last")]
        fn = MagicMock(side_effect=errors)
        with self.assertRaises(TimeoutError) as ctx:
            call_with_retry(fn, RetryPolicy(max_attempts=2), sleep_fn=_no_sleep)
        self.assertIs(ctx.exception, errors[1])

    def test_non_retryable_propagates_immediately(self):
        fn = MagicMock(side_effect=ValueError("bad"))
        with self.assertRaises(ValueError):
            call_with_retry(fn, RetryPolicy(max_attempts=5), sleep_fn=_no_sleep)
        self.assertEqual(fn.call_count, 1)

    def test_sleeps_between_attempts_only(self):
        sleeps = []
        fn = MagicMock(side_effect=TimeoutError("t"))
        with self.assertRaises(TimeoutError):
            call_with_retry(fn, RetryPolicy(max_attempts=3, jitter=0.0), sleep_fn=sleeps.append)
        self.assertEqual(len(sleeps), 2)
        self.assertLess(sleeps[0], sleeps[1])

    def test_zero_attempts_still_calls_once(self):
        fn = MagicMock(return_value="ok")
        self.assertEqual(call_with_retry(fn, RetryPolicy(max_attempts=0), sleep_fn=_no_sleep), "ok")


class TestBackoff(unittest.TestCase):

    def test_exponential(self):
        policy = RetryPolicy(backoff_base=1.0, jitter=0.0, backoff_max=100.0)
        self.assertEqual(calculate_backoff(0, policy), 1.0)
        self.assertEqual(calculate_backoff(1, policy), 2.0)
        self.assertEqual(calculate_backoff(3, policy), 8.0)

    def test_capped(self):
        policy = RetryPolicy(backoff_base=1.0, jitter=0.0, backoff_max=5.0)
        self.assertEqual(calculate_backoff(10, policy), 5.0)

    def test_jitter_bounds(self):
        policy = RetryPolicy(backoff_base=1.0, jitter=0.2, backoff_max=100.0)
        for _ in range(50):
            delay = calculate_backoff(2, policy)
            self.assertGreaterEqual(delay, 3.2)
            self.assertLessEqual(delay, 4.8)


class TestCircuitBreaker(unittest.TestCase):

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(threshold=2, reset_seconds=60)
        breaker.record_failure()
        self.assertEqual(breaker.state, "closed")
        breaker.record_failure()
        self.assertEqual(breaker.state, "open")
        with self.assertRaises(CircuitBreakerOpen):
            breaker.check()

    def test_half_open_after_reset(self):
        now = [100.0]
        breaker = CircuitBreaker(threshold=1, reset_seconds=10, clock=lambda: now[0])
        breaker.record_failure()
        self.assertEqual(breaker.state, "open")
        now[0] += 11
        self.assertEqual(breaker.state, "half_open")
        breaker.check()

    def test_success_closes(self):
        breaker = CircuitBreaker(threshold=1)
        breaker.record_failure()
        breaker.record_success()
        self.assertEqual(breaker.state, "closed")

    def test_open_breaker_skips_call(self):
        breaker = CircuitBreaker(threshold=1)
        breaker.record_failure()
        fn = MagicMock()
        with self.assertRaises(CircuitBreakerOpen):
            call_with_retry(fn, breaker=breaker, sleep_fn=_no_sleep)
        fn.assert_not_called()

    def test_exhausted_call_counts_once(self):
        breaker = CircuitBreaker(threshold=2)
        fn = MagicMock(side_effect=TimeoutError("t"))
        with self.assertRaises(TimeoutError):
            call_with_retry(fn, RetryPolicy(max_attempts=3), breaker=breaker, sleep_fn=_no_sleep)
        self.assertEqual(breaker.state, "closed")


class TestPolicyFromDict(unittest.TestCase):

    def test_defaults(self):
        self.assertEqual(RetryPolicy.from_dict(None), RetryPolicy())

    def test_overrides(self):
        policy = RetryPolicy.from_dict({"max_attempts": "5", "backoff_base": 0, "circuit_breaker_threshold": 9})
        self.assertEqual(policy.max_attempts, 5)
        self.assertEqual(policy.backoff_base, 0.0)
        self.assertEqual(policy.circuit_breaker_threshold, 9)


if __name__ == "__main__":
    unittest.main()
