#!/usr/bin/env python3
"""
Unit tests for the exponential-backoff retry policy.
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from venuemap.core.constants import ErrorCode
from venuemap.core.error_codes import JobError, RetryExhaustedError
from venuemap.core.retry import RetryPolicy


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class Flaky:
    """Fails `failures` times, then returns `value`."""

    def __init__(self, failures, value="ok", error=None):
        self.failures = failures
        self.value = value
        self.error = error or JobError(ErrorCode.NETWORK_TRANSIENT, "flaky")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestRetryPolicy(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.policy = RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0)
        self.sleep = RecordingSleep()

    async def test_success_first_try(self):
        result = await self.policy.run(Flaky(0), sleep=self.sleep)
        self.assertEqual(result.value, "ok")
        self.assertEqual(result.attempts, 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_succeeds_on_last_attempt(self):
        op = Flaky(2, value={"venue": "x"})
        result = await self.policy.run(op, sleep=self.sleep)
        self.assertEqual(result.value, {"venue": "x"})
        self.assertEqual(result.attempts, 3)
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleep.delays, [1.0, 2.0])

    async def test_always_fails_after_exactly_max_attempts(self):
        op = Flaky(100)
        with self.assertRaises(RetryExhaustedError) as ctx:
            await self.policy.run(op, sleep=self.sleep)
        self.assertEqual(op.calls, 3)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)
        self.assertIs(ctx.exception.last_error, op.error)
        # cumulative delay 1 + 2, no sleep after the final attempt
        self.assertEqual(self.sleep.delays, [1.0, 2.0])
        self.assertEqual(sum(self.sleep.delays), 3.0)

    async def test_non_retryable_stops_immediately(self):
        op = Flaky(100, error=JobError(ErrorCode.VIDEO_UNAVAILABLE, "gone"))
        with self.assertRaises(RetryExhaustedError) as ctx:
            await self.policy.run(op, sleep=self.sleep)
        self.assertEqual(op.calls, 1)
        self.assertEqual(ctx.exception.code, ErrorCode.VIDEO_UNAVAILABLE)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(self.sleep.delays, [])

    async def test_unexpected_exceptions_are_retried(self):
        op = Flaky(1, error=RuntimeError("socket closed"))
        result = await self.policy.run(op, sleep=self.sleep)
        self.assertEqual(result.attempts, 2)

    async def test_longer_schedule(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=0.5, multiplier=3.0)
        with self.assertRaises(RetryExhaustedError):
            await policy.run(Flaky(100), sleep=self.sleep)
        self.assertEqual(self.sleep.delays, [0.5, 1.5, 4.5, 13.5])


class TestRetryPolicyConfig(unittest.TestCase):

    def test_from_config(self):
        policy = RetryPolicy.from_config({'max_attempts': 4, 'initial_delay_sec': 0.5,
                                          'multiplier': 3})
        self.assertEqual(policy, RetryPolicy(4, 0.5, 3.0))

    def test_delay_for(self):
        policy = RetryPolicy()
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [1.0, 2.0, 4.0])

    def test_invalid_attempts(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)


if __name__ == "__main__":
    unittest.main()
