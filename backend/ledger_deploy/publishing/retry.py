"""Retry policy for ledger operations."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ledger_deploy.core.config import RetryPolicy
from ledger_deploy.core.errors import ErrorKind, PublishError, classify_error
from ledger_deploy.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]
RetryHook = Callable[[str, int, float, str], None]


def should_retry_error(error: BaseException) -> bool:
    """Only indexer lag and network-type failures are worth another attempt."""
    return classify_error(error).retryable


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    label: str = "operation",
    on_retry: RetryHook | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails fatally, or attempts run out.

    ``operation`` is re-invoked from scratch on every attempt so it can look
    up fresh state. Conflicts and unclassified failures are raised on the
    first attempt.
    """
    policy = policy or RetryPolicy()

    def _before_sleep(state: RetryCallState) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        error = state.outcome.exception() if state.outcome else None
        reason = str(error) if error else "unknown error"
        logger.warning(
            "%s failed (attempt %s/%s, %s), retrying in %.1fs: %s",
            label,
            state.attempt_number,
            policy.max_attempts,
            classify_error(error or reason).value,
            delay,
            reason,
        )
        if on_retry:
            on_retry(label, state.attempt_number, delay, reason)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            exp_base=policy.multiplier,
            max=policy.max_delay,
        ),
        retry=retry_if_exception(should_retry_error),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result


def as_publish_error(error: BaseException, context: str) -> PublishError:
    """Wrap a provider failure, keeping its classification."""
    if isinstance(error, PublishError):
        return error
    return PublishError(f"{context}: {error}", kind=classify_error(error))


__all__ = ["ErrorKind", "as_publish_error", "classify_error", "retry_with_backoff", "should_retry_error"]
