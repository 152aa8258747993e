import asyncio

import pytest

from blog_pipeline.executor.errors import MalformedOutputError, TransientStageFailure
from blog_pipeline.executor.retry import RetryPolicy


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_succeeds_after_transient_failures():
    sleep = SleepRecorder()
    policy = RetryPolicy(max_retries=3, base_delay=1.0, sleep=sleep)
    attempts = []

    async def call(attempt):
        attempts.append(attempt)
        if attempt < 3:
            raise TransientStageFailure("503")
        return "ok"

    assert asyncio.run(policy.run(call, label="test")) == "ok"
    assert attempts == [1, 2, 3]
    assert sleep.delays == [1.0, 2.0]


def test_reraises_last_transient_error():
    sleep = SleepRecorder()
    policy = RetryPolicy(max_retries=3, base_delay=0.5, sleep=sleep)
    errors = [TransientStageFailure(f"failure {n}") for n in range(4)]

    async def call(attempt):
        raise errors[attempt - 1]

    with pytest.raises(TransientStageFailure) as exc_info:
        asyncio.run(policy.run(call))

    assert exc_info.value is errors[-1]
    assert sleep.delays == [0.5, 1.0, 2.0]


def test_non_transient_errors_are_not_retried():
    policy = RetryPolicy(sleep=SleepRecorder())
    attempts = []

    async def call(attempt):
        attempts.append(attempt)
        raise MalformedOutputError("bad json")

    with pytest.raises(MalformedOutputError):
        asyncio.run(policy.run(call))
    assert attempts == [1]


def test_zero_retries_means_one_attempt():
    policy = RetryPolicy(max_retries=0, sleep=SleepRecorder())
    assert policy.max_attempts == 1

    async def call(attempt):
        raise TransientStageFailure("timeout")

    with pytest.raises(TransientStageFailure):
        asyncio.run(policy.run(call))


def test_cancellation_interrupts_backoff():
    policy = RetryPolicy(max_retries=3, base_delay=60)
    attempts = []

    async def call(attempt):
        attempts.append(attempt)
        raise TransientStageFailure("503")

    async def scenario():
        task = asyncio.create_task(policy.run(call))
        await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            return True
        return False

    assert asyncio.run(scenario()) is True
    assert attempts == [1]


def test_negative_retries_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)
