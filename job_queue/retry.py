"""
Bounded retry for provider calls.

RetryPolicy is plain data (max attempts, backoff base) so it can be tested
without I/O; call_with_retry feeds it to tenacity. The delay after failed
attempt n is backoff_base ** n seconds (2s, 4s, ... with the default base).
Only ChannelErrors flagged retryable are retried; anything else stops on
the first attempt.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from channels.base import ChannelError

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt_number: int) -> float:
        return float(self.backoff_base ** attempt_number)

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return isinstance(exc, ChannelError) and exc.retryable


@dataclass
class RetryOutcome:
    result: Any = None
    attempts: int = 0
    last_error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.last_error is None

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def error_message(self) -> Optional[str]:
        return str(self.last_error) if self.last_error is not None else None


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    log_context: Optional[dict[str, Any]] = None,
) -> RetryOutcome:
    """Run fn under the policy; never raises, the outcome carries the last error."""
    context = log_context or {}

    def _wait(retry_state: RetryCallState) -> float:
        return policy.delay_for(retry_state.attempt_number)

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("provider_call_retrying",
                       attempt=retry_state.attempt_number,
                       max_attempts=policy.max_attempts,
                       delay=policy.delay_for(retry_state.attempt_number),
                       error=str(exc),
                       **context)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait,
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await fn()
    except Exception as e:
        return RetryOutcome(attempts=attempts, last_error=e)
    return RetryOutcome(result=result, attempts=attempts)
