"""Collapse concurrent calls for the same key into one execution."""
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Hashable


class SingleFlight:
    """
    Per-key call de-duplication.

    The first caller for a key runs ``fn``; callers arriving while it runs
    block and receive the same return value (or exception). Once the call
    finishes the key is free again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: Dict[Hashable, Future] = {}

    def do(self, key: Hashable, fn: Callable[[], Any]) -> Any:
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = Future()
                self._calls[key] = call

        if not leader:
            return call.result()

        try:
            result = fn()
        except BaseException as e:
            call.set_exception(e)
            raise
        else:
            call.set_result(result)
            return result
        finally:
            with self._lock:
                self._calls.pop(key, None)

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._calls
