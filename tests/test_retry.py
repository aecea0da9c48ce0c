# tests/test_retry.py

import asyncio

import pytest

from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.retry import (
    EndpointRotator, PipelineTimeout, RetryPolicy, is_retryable, with_retry, with_timeout,
)

NO_WAIT = RetryPolicy(max_retries=2, base_delay_ms=0, jitter_ms=0)


class Flaky:
    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = []

    async def __call__(self, *args):
        self.calls.append(args)
        if len(self.calls) <= self.failures:
            raise self.error
        return "ok"


def test_delay_grows_and_is_capped():
    policy = RetryPolicy(backoff_base=2, base_delay_ms=1000, jitter_ms=0, cap_ms=3000)
    assert policy.delay_for(0) == 1.0
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(5) == 3.0


def test_is_retryable():
    assert is_retryable(TimeoutError("slow"))
    assert is_retryable(RuntimeError("503 Service Unavailable"))
    assert is_retryable(PipelineError(ErrorCode.UPLOAD_FAILED, "upstream aborted"))
    assert not is_retryable(PipelineError(ErrorCode.INVALID_REQUEST, "bad input"))
    assert not is_retryable(ValueError("nope"))


def test_with_retry_recovers_from_transient_error():
    fn = Flaky(failures=1, error=RuntimeError("request timed out"))
    assert asyncio.run(with_retry(fn, NO_WAIT, "probe")) == "ok"
    assert len(fn.calls) == 2


def test_with_retry_gives_up_after_policy_is_exhausted():
    fn = Flaky(failures=10, error=TimeoutError("timed out"))
    with pytest.raises(TimeoutError):
        asyncio.run(with_retry(fn, NO_WAIT, "model"))
    assert len(fn.calls) == 3


def test_with_retry_does_not_retry_permanent_errors():
    fn = Flaky(failures=10, error=PipelineError(ErrorCode.TOO_LARGE, "too big"))
    with pytest.raises(PipelineError):
        asyncio.run(with_retry(fn, NO_WAIT, "download"))
    assert len(fn.calls) == 1


def test_with_retry_rotates_endpoints():
    fn = Flaky(failures=2, error=RuntimeError("502 bad gateway"))
    rotator = EndpointRotator(["h1", "h2"])
    asyncio.run(with_retry(fn, NO_WAIT, "probe", rotator=rotator))
    assert fn.calls == [("h1",), ("h2",), ("h1",)]


def test_with_retry_sleeps_between_attempts():
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    policy = RetryPolicy(max_retries=2, backoff_base=2, base_delay_ms=100, jitter_ms=0)
    fn = Flaky(failures=2, error=TimeoutError())
    asyncio.run(with_retry(fn, policy, "upload", sleep=fake_sleep))
    assert slept == [0.1, 0.2]


def test_empty_rotator_yields_none():
    assert EndpointRotator([]).next() is None


def test_with_timeout_raises_pipeline_timeout():
    async def slow():
        await asyncio.sleep(5)

    with pytest.raises(PipelineTimeout) as excinfo:
        asyncio.run(with_timeout(slow(), 0.01, "model analysis"))
    assert "TIMEOUT (model analysis)" in str(excinfo.value)
    assert isinstance(excinfo.value, TimeoutError)


def test_with_retry_does_not_retry_cancellation():
    fn = Flaky(failures=10, error=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        asyncio.run(with_retry(fn, NO_WAIT, "download"))
    assert len(fn.calls) == 1


def test_with_retry_reraises_the_last_error_itself():
    errors = [RuntimeError("503 first"), RuntimeError("503 second"), RuntimeError("503 third")]

    async def fn():
        raise errors.pop(0)

    with pytest.raises(RuntimeError, match="503 third"):
        asyncio.run(with_retry(fn, NO_WAIT, "model"))
