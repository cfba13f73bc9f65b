"""
Coalesce concurrent calls for the same key into one execution.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """
    The first caller for a key runs fn; callers arriving while it is in flight
    block and receive the same result (or the same exception). Once it settles
    the key is released, so a later call runs fn again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: dict[str, Future] = {}

    def do(self, key: str, fn: Callable[[], T]) -> T:
        with self._lock:
            fut = self._calls.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._calls[key] = fut

        if not leader:
            logger.debug("Joining in-flight call for %s", key)
            return fut.result()

        try:
            result = fn()
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            with self._lock:
                self._calls.pop(key, None)

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls
