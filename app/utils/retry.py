"""Configurable retry/backoff helpers for sync entrypoints and preparation steps."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from app.config.logger import app_logger

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """How many times to try an operation and how long to wait between tries.

    ``delay(attempt)`` returns the wait in seconds after failed attempt number
    ``attempt`` (1-based).
    """

    max_attempts: int
    delay: Callable[[int], float]

    @classmethod
    def fixed(cls, delays_ms: Sequence[int]) -> "BackoffPolicy":
        """One initial attempt plus one retry per listed delay."""
        delays = [max(0, d) / 1000.0 for d in delays_ms]

        def _delay(attempt: int) -> float:
            if not delays:
                return 0.0
            return delays[min(attempt, len(delays)) - 1]

        return cls(max_attempts=len(delays) + 1, delay=_delay)

    @classmethod
    def exponential(
        cls,
        base_ms: int,
        max_attempts: int,
        factor: float = 2.0,
        cap_ms: Optional[int] = None,
    ) -> "BackoffPolicy":
        def _delay(attempt: int) -> float:
            wait_ms = base_ms * (factor ** (attempt - 1))
            if cap_ms is not None:
                wait_ms = min(wait_ms, cap_ms)
            return wait_ms / 1000.0

        return cls(max_attempts=max_attempts, delay=_delay)

    @classmethod
    def none(cls) -> "BackoffPolicy":
        return cls(max_attempts=1, delay=lambda attempt: 0.0)


def is_transient_db_error(exc: BaseException) -> bool:
    """True for connection-level database failures worth reconnecting for."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (ConnectionRefusedError, ConnectionResetError, TimeoutError))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    retry_on: Callable[[BaseException], bool] = lambda exc: True,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``fn`` until it succeeds, the error is not retryable, or attempts run out."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not retry_on(exc):
                raise
            wait = policy.delay(attempt)
            app_logger.warning(
                f"{label} failed (attempt {attempt}/{policy.max_attempts}): {exc}. "
                f"Retrying in {wait:.1f}s"
            )
            await sleep(wait)

