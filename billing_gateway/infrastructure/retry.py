"""Retry with exponential backoff for idempotent gateway calls"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from billing_gateway.config import settings
from billing_gateway.infrastructure.observability.metrics import gateway_retry_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """
    Run an async operation until it succeeds or attempts run out.

    Retry strategy:
    - delay before retry n is initial_delay * backoff_multiplier ** (n - 1)
      (1s, 2s, 4s with the defaults)
    - the wait is an awaited sleep, so only the calling task is suspended
    - on exhaustion the last exception is re-raised unchanged

    The operation may run more than once, so it must be idempotent (gateway
    calls carry an idempotency key for exactly this reason).
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        initial_delay: float | None = None,
        backoff_multiplier: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.payment_max_retries
        self.initial_delay = initial_delay if initial_delay is not None else settings.payment_initial_delay
        self.backoff_multiplier = (
            backoff_multiplier if backoff_multiplier is not None else settings.payment_backoff_multiplier
        )
        self._sleep = sleep

    def delay_for(self, attempt: int, initial_delay: float, backoff_multiplier: float) -> float:
        return initial_delay * (backoff_multiplier ** (attempt - 1))

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        backoff_multiplier: Optional[float] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        operation_name: str = "operation",
    ) -> T:
        max_attempts = max_attempts if max_attempts is not None else self.max_attempts
        initial_delay = initial_delay if initial_delay is not None else self.initial_delay
        backoff_multiplier = backoff_multiplier if backoff_multiplier is not None else self.backoff_multiplier
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except retry_on as e:
                if attempt >= max_attempts:
                    gateway_retry_counter.labels(operation=operation_name, final="true").inc()
                    logger.error(
                        "Retries exhausted",
                        extra={
                            "operation": operation_name,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    raise

                delay = self.delay_for(attempt, initial_delay, backoff_multiplier)
                gateway_retry_counter.labels(operation=operation_name, final="false").inc()
                logger.warning(
                    "Attempt failed, retrying",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "delay_seconds": delay,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                await self._sleep(delay)
