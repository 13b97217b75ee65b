"""Bounded exponential backoff around collaborator calls."""

import asyncio

import pytest

from statuscheck.common.retry import RetryPolicy, call_with_retry
from statuscheck.services.orchestrator.errors import StatusCheckFailure


class Recorder:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def test_backoff_grows_and_caps():
    policy = RetryPolicy(initial_backoff=1.0, backoff_multiplier=2.0, max_backoff=5.0)
    assert [policy.backoff_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_retries_until_success():
    """Two transient failures then success: two backoffs, value returned."""

    recorder = Recorder()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise StatusCheckFailure("503")
        return "SETTLED"

    policy = RetryPolicy(max_attempts=3, initial_backoff=0.1, backoff_multiplier=2.0, max_backoff=1.0)
    result = asyncio.run(call_with_retry(flaky, policy, dependency="status_check", service_name="t", sleep=recorder.sleep))

    assert result == "SETTLED"
    assert len(attempts) == 3
    assert recorder.sleeps == pytest.approx([0.1, 0.2])


def test_exhausted_attempts_raise_last_error():
    recorder = Recorder()
    attempts = []

    async def broken():
        attempts.append(1)
        raise StatusCheckFailure(f"503 attempt {len(attempts)}")

    policy = RetryPolicy(max_attempts=4, initial_backoff=0.0)
    with pytest.raises(StatusCheckFailure, match="attempt 4"):
        asyncio.run(call_with_retry(broken, policy, dependency="status_check", service_name="t", sleep=recorder.sleep))
    assert len(attempts) == 4
    assert len(recorder.sleeps) == 3


def test_non_retryable_error_is_not_retried():
    recorder = Recorder()
    attempts = []

    async def rejected():
        attempts.append(1)
        raise StatusCheckFailure("422", retryable=False)

    with pytest.raises(StatusCheckFailure):
        asyncio.run(
            call_with_retry(rejected, RetryPolicy(max_attempts=5), dependency="x", service_name="t", sleep=recorder.sleep)
        )
    assert len(attempts) == 1
    assert recorder.sleeps == []


def test_timeout_counts_as_failed_attempt():
    """A hung call is cut off by the per-call timeout and retried."""

    attempts = []

    async def hung():
        attempts.append(1)
        await asyncio.sleep(10)

    policy = RetryPolicy(max_attempts=2, initial_backoff=0.0, per_call_timeout=0.01)
    with pytest.raises(TimeoutError, match="timed out"):
        asyncio.run(call_with_retry(hung, policy, dependency="notifier", service_name="t", sleep=Recorder().sleep))
    assert len(attempts) == 2
