import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import pytest

from minder_resilience.core_logic.resilience import RetryPolicy
from minder_resilience.utils import MaxRetriesExceeded, NetworkFailure, ServerRejection, TransferCancelled


def test_negative_attempts_are_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(attempts=-1)


def test_should_retry_counts_attempts():
    policy = RetryPolicy(attempts=2)
    error = NetworkFailure("down")
    assert policy.total_attempts == 3
    assert policy.should_retry(1, error)
    assert policy.should_retry(2, error)
    assert not policy.should_retry(3, error)


def test_cancellation_is_never_retried():
    policy = RetryPolicy(attempts=5)
    assert not policy.should_retry(1, TransferCancelled("stop"))
    assert not policy.should_retry(1, asyncio.CancelledError())


def test_server_rejections_are_retried_like_network_failures():
    policy = RetryPolicy(attempts=1)
    assert policy.should_retry(1, ServerRejection("HTTP 400", status_code=400))


def test_delay_backoff_is_capped():
    policy = RetryPolicy(attempts=5, delay=2, backoff=3, max_delay=10)
    assert policy.delay_for(1) == 2
    assert policy.delay_for(2) == 6
    assert policy.delay_for(3) == 10


@pytest.mark.parametrize("retry_count, max_retries, expected", [
    (1, 2, True),
    (2, 2, True),
    (3, 2, False),
    (1, 0, False),
])
def test_allows_requeue(retry_count, max_retries, expected):
    assert RetryPolicy.allows_requeue(retry_count, max_retries) is expected


class TestRetryPolicyRun(unittest.IsolatedAsyncioTestCase):

    async def test_returns_first_success(self):
        operation = AsyncMock(side_effect=[NetworkFailure("a"), "done"])
        sleep = AsyncMock()
        on_retry = MagicMock()

        result = await RetryPolicy(attempts=2, delay=1.5).run(operation, on_retry=on_retry, sleep=sleep)

        self.assertEqual(result, "done")
        self.assertEqual(operation.await_count, 2)
        sleep.assert_awaited_once_with(1.5)
        on_retry.assert_called_once()
        self.assertEqual(on_retry.call_args[0][0], 1)

    async def test_exhaustion_raises_max_retries_exceeded(self):
        last = ServerRejection("HTTP 500", status_code=500)
        operation = AsyncMock(side_effect=[NetworkFailure("a"), NetworkFailure("b"), last])

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            await RetryPolicy(attempts=2, delay=0).run(operation)

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIs(ctx.exception.last_error, last)
        self.assertEqual(operation.await_count, 3)

    async def test_without_retries_the_original_error_propagates(self):
        operation = AsyncMock(side_effect=NetworkFailure("down"))
        with self.assertRaises(NetworkFailure):
            await RetryPolicy(attempts=0).run(operation)
        self.assertEqual(operation.await_count, 1)

    async def test_cancellation_stops_immediately(self):
        operation = AsyncMock(side_effect=TransferCancelled("stop"))
        sleep = AsyncMock()
        with self.assertRaises(TransferCancelled):
            await RetryPolicy(attempts=3).run(operation, sleep=sleep)
        self.assertEqual(operation.await_count, 1)
        sleep.assert_not_awaited()

    async def test_cancellation_during_pause_is_not_retried(self):
        operation = AsyncMock(side_effect=NetworkFailure("down"))
        sleep = AsyncMock(side_effect=TransferCancelled("stop"))
        with self.assertRaises(TransferCancelled):
            await RetryPolicy(attempts=3, delay=1).run(operation, sleep=sleep)
        self.assertEqual(operation.await_count, 1)
