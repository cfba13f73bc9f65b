"""
Generic exponential-backoff retry.

One loop shared by the metadata probe, the download and the credential
refresh. Delays double from base_delay: with base 5s and 3 attempts the
sleeps are 5s then 10s.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from tubescribe.core.error_codes import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryContext:
    """Per-operation counters. Discarded once the operation settles."""
    operation: str
    max_attempts: int
    base_delay: float
    attempt: int = 0
    total_delay: float = 0.0
    delays: list[float] = field(default_factory=list)
    last_error: Optional[BaseException] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        return self.base_delay * (2 ** (self.attempt - 1))


def _default_sleep(delay: float, cancel_event: threading.Event | None):
    if cancel_event is None:
        threading.Event().wait(delay)
    elif cancel_event.wait(delay):
        raise Cancelled("Cancelled while waiting to retry")


def retry_with_backoff(fn: Callable[[RetryContext], T], *,
                       operation: str,
                       max_attempts: int,
                       base_delay: float,
                       is_retryable: Callable[[BaseException], bool],
                       on_retry: Callable[[RetryContext, BaseException], None] | None = None,
                       sleep: Callable[[float], None] | None = None,
                       cancel_event: threading.Event | None = None) -> T:
    """
    Call fn(ctx) until it succeeds, raises a non-retryable error, or the
    attempt budget runs out. The last error is re-raised unchanged.

    on_retry runs after the backoff sleep and before the next attempt, so a
    credential refresh there happens right before it is used.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    ctx = RetryContext(operation=operation, max_attempts=max_attempts, base_delay=base_delay)
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"{operation} cancelled")
        ctx.attempt += 1
        try:
            return fn(ctx)
        except Cancelled:
            raise
        except Exception as e:
            ctx.last_error = e
            if not is_retryable(e) or ctx.exhausted:
                if ctx.attempt > 1:
                    logger.warning("%s failed after %d attempt(s): %s",
                                   operation, ctx.attempt, e)
                raise

            delay = ctx.next_delay()
            logger.warning("%s attempt %d/%d failed (%s), retrying in %.1fs",
                           operation, ctx.attempt, max_attempts, e, delay)
            if sleep is not None:
                sleep(delay)
            else:
                _default_sleep(delay, cancel_event)
            ctx.delays.append(delay)
            ctx.total_delay += delay

            if on_retry is not None:
                on_retry(ctx, e)
