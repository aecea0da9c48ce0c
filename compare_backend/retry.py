"""
Deadline and retry helpers for network and process boundaries.

``with_timeout`` runs an awaitable under a deadline. The awaited task is
cancelled on expiry, which kills any process owned by the toolchain runner;
work that was pushed to a thread (blocking ``requests`` calls) keeps running
until it returns on its own. That thread is leaked, not cancelled.
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt


RETRYABLE_PATTERN = re.compile(
    r"\b5\d\d\b|timeout|timed out|unavailable|aborted|temporarily", re.IGNORECASE
)


class PipelineTimeout(TimeoutError):
    """Raised by ``with_timeout`` when the deadline passes."""


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait between attempts."""
    max_retries: int = 2
    backoff_base: float = 1.5
    jitter_ms: float = 300.0
    cap_ms: float = 10000.0
    base_delay_ms: float = 1000.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after the failed attempt ``attempt`` (0-based)."""
        delay_ms = self.backoff_base ** attempt * self.base_delay_ms
        delay_ms += random.uniform(0, self.jitter_ms)
        return min(delay_ms, self.cap_ms) / 1000.0


class EndpointRotator:
    """Round-robin selector over alternate upstream endpoints."""

    def __init__(self, endpoints: Sequence[str]):
        self.endpoints: List[str] = list(endpoints)
        self._index = 0

    def next(self) -> Optional[str]:
        if not self.endpoints:
            return None
        endpoint = self.endpoints[self._index % len(self.endpoints)]
        self._index += 1
        return endpoint


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable(exc: BaseException) -> bool:
    """Default classifier: 5xx statuses, timeouts and transient messages."""
    if isinstance(exc, TimeoutError):
        return True
    status = _status_of(exc)
    if status is not None and status >= 500:
        return True
    return bool(RETRYABLE_PATTERN.search(str(exc)))


async def with_timeout(awaitable: Awaitable[Any], seconds: float, label: str = "operation") -> Any:
    deadline = asyncio.timeout(seconds)
    try:
        async with deadline:
            return await awaitable
    except TimeoutError:
        # a TimeoutError from inside the awaitable is not ours to relabel
        if not deadline.expired():
            raise
        logging.error(f"⏱️ {label} exceeded {seconds:.0f}s budget")
        raise PipelineTimeout(f"TIMEOUT ({label})") from None


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    policy: RetryPolicy,
    label: str = "operation",
    retryable: Callable[[BaseException], bool] = is_retryable,
    rotator: Optional[EndpointRotator] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Call ``fn`` until it succeeds, a non-retryable error occurs, or the
    policy's retries run out. The last error is re-raised as is.

    When a rotator is given, ``fn`` is called with the next endpoint on
    every attempt; otherwise it is called without arguments.
    """
    attempts = policy.max_retries + 1

    def log_retry(state: RetryCallState) -> None:
        first_line = str(state.outcome.exception()).split("\n")[0]
        logging.warning(
            f"🔁 {label}: retry {state.attempt_number}/{policy.max_retries} "
            f"in {state.next_action.sleep * 1000:.0f}ms ({first_line})"
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception(lambda e: isinstance(e, Exception) and retryable(e)),
        stop=stop_after_attempt(attempts),
        wait=lambda state: policy.delay_for(state.attempt_number - 1),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            number = attempt.retry_state.attempt_number
            if rotator is not None:
                endpoint = rotator.next()
                logging.info(f"🔁 {label}: attempt {number}/{attempts} via {endpoint}")
                result = await fn(endpoint)
            else:
                result = await fn()
            if number > 1:
                logging.info(f"✅ {label} succeeded on attempt {number}")
            return result
