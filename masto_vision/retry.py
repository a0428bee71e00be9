from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

if TYPE_CHECKING:
    from .run_log import RunLogger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Fixed-delay retry policy for async calls.

    - max_attempts counts the initial attempt (max_attempts=3 => 1 try + 2 retries).
    - delay_seconds is the pause between attempts.
    - retry_after_cap_seconds caps any Retry-After override (0 disables the cap).
    """

    max_attempts: int = 10
    delay_seconds: float = 5.0
    retry_after_cap_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int

    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None

    error_type: str
    error_message: str

    context_url: str | None


IsRetryableFn = Callable[[BaseException], tuple[bool, float | None, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], Awaitable[None]]


def _normalize_retry_after(value: float | None, cfg: RetryConfig) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    if cfg.retry_after_cap_seconds > 0:
        seconds = min(seconds, float(cfg.retry_after_cap_seconds))
    return seconds


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    context_url: str | None = None,
) -> T:
    """
    Await fn() with retries on retryable failures.

    Retry logic:
    - If is_retryable(exc) => (True, retry_after_seconds, reason), retry until max_attempts.
    - Delay is cfg.delay_seconds, raised to Retry-After when the server asks for longer.
    - The last failure is re-raised once the budget is spent.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or asyncio.sleep

    for attempt in range(1, int(cfg.max_attempts) + 1):
        try:
            return await fn()
        except Exception as exc:
            retryable, retry_after, reason = is_retryable(exc)

            if not retryable or attempt >= int(cfg.max_attempts):
                raise

            ra = _normalize_retry_after(retry_after, cfg)
            delay = max(0.0, float(cfg.delay_seconds))
            if ra is not None:
                delay = max(delay, ra)

            if on_retry is not None:
                msg = (str(exc) or "").strip()
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=int(attempt),
                        next_attempt=int(attempt) + 1,
                        max_attempts=int(cfg.max_attempts),
                        delay_seconds=float(delay),
                        retry_after_seconds=ra,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=msg,
                        context_url=context_url,
                    )
                )

            if delay > 0:
                await sleeper(float(delay))

    # Unreachable, but keeps typing happy.
    raise RuntimeError(f"Retry loop exited unexpectedly for operation={op}")


def logging_on_retry(log: RunLogger) -> OnRetryFn:
    """on_retry hook that writes each RetryEvent to the run log."""

    def _on_retry(event: RetryEvent) -> None:
        log.warning(
            "retrying",
            url=event.context_url,
            operation=event.operation,
            failure_attempt=event.failure_attempt,
            max_attempts=event.max_attempts,
            delay_seconds=event.delay_seconds,
            retry_after_seconds=event.retry_after_seconds,
            reason=event.reason,
            error_type=event.error_type,
            error_message=event.error_message,
        )

    return _on_retry
