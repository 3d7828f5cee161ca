"""Build-once, read-many cache for shared calibration resources.

Frames processed in parallel share exactly two things: the master bias and
the bad-column table. Both are expensive or I/O bound to produce and must be
produced at most once per key. The first caller for a key becomes the
*owner* and runs the builder; every concurrent caller for the same key waits
on the owner's future instead of building again.

A builder may legitimately return ``None`` ("resource does not exist"); that
answer is cached like any other. A builder exception is cached as well and
re-raised to every waiter, so a broken resource is not rebuilt over and over
within one batch.
"""

from __future__ import annotations

from concurrent.futures import Future
import logging
import threading
from typing import Callable, Generic, Hashable, TypeVar


log = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BuildOnceCache(Generic[K, V]):
    def __init__(self, builder: Callable[[K], V], *, name: str = "cache"):
        self._builder = builder
        self._name = name
        self._lock = threading.Lock()
        self._futures: dict[K, Future] = {}
        self._builds = 0

    @property
    def n_builds(self) -> int:
        """Number of builder invocations so far."""
        return self._builds

    def __contains__(self, key: K) -> bool:
        with self._lock:
            fut = self._futures.get(key)
        return fut is not None and fut.done()

    def get(self, key: K) -> V:
        with self._lock:
            fut = self._futures.get(key)
            owner = fut is None
            if owner:
                fut = Future()
                fut.set_running_or_notify_cancel()
                self._futures[key] = fut
                self._builds += 1

        if owner:
            log.debug("%s: building %r", self._name, key)
            try:
                value = self._builder(key)
            except BaseException as e:
                fut.set_exception(e)
                raise
            fut.set_result(value)
            return value

        log.debug("%s: waiting for %r", self._name, key)
        return fut.result()

    def put(self, key: K, value: V) -> None:
        """Seed the cache with a pre-built value."""
        fut: Future = Future()
        fut.set_result(value)
        with self._lock:
            self._futures[key] = fut

    def clear(self) -> None:
        with self._lock:
            self._futures.clear()
