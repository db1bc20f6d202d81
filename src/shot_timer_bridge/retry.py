from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ProtocolError, RequestTimeout

T = TypeVar("T")


def default_retryable(exc: BaseException) -> bool:
    """Timeouts and BUSY/TIMEOUT/DATA_EMPTY replies are worth another try."""
    if isinstance(exc, RequestTimeout):
        return True
    if isinstance(exc, ProtocolError):
        return exc.retryable
    return False


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    pause_ms: int = 120
    retryable: Callable[[BaseException], bool] = field(default=default_retryable)

    async def run(self, fn: Callable[[int], Awaitable[T]],
                  on_retry: Optional[Callable[[int, BaseException], None]] = None) -> T:
        """Call ``fn(attempt)`` until it succeeds or the policy gives up.

        Only exceptions accepted by ``retryable`` are retried; the last one is
        re-raised once ``max_attempts`` calls have failed.
        """
        attempt = 1
        while True:
            try:
                return await fn(attempt)
            except Exception as e:
                if attempt >= self.max_attempts or not self.retryable(e):
                    raise
                if on_retry is not None:
                    on_retry(attempt, e)
            await asyncio.sleep(self.pause_ms / 1000.0)
            attempt += 1
