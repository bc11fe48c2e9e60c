"""Bounded waits on collaborator calls."""

import concurrent.futures
import threading
from typing import Any, Callable, Dict, TypeVar

T = TypeVar("T")

CallTimeout = concurrent.futures.TimeoutError


class TimedCaller:
    """Run calls on a worker pool and stop waiting after a timeout.

    A call that times out is not aborted; it keeps its worker thread until it
    returns and its result is discarded.
    """

    def __init__(self, name: str, max_workers: int = 4):
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=name
        )

    def call(self, fn: Callable[..., T], timeout: float, *args: Any) -> T:
        """
        Call ``fn(*args)`` and wait at most ``timeout`` seconds.

        Raises:
            CallTimeout: If the call did not finish in time
            Exception: Whatever ``fn`` raised
        """
        future = self._pool.submit(fn, *args)
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)


class OrderedCaller:
    """Run calls for the same key one at a time, in submission order.

    Each key gets a single-worker pool, so a call that timed out still
    finishes before any later call for that key starts. Keys never wait on
    each other.
    """

    def __init__(self, name: str):
        self.name = name
        self._pools: Dict[str, concurrent.futures.ThreadPoolExecutor] = {}
        self._guard = threading.Lock()

    def _pool_for(self, key: str) -> concurrent.futures.ThreadPoolExecutor:
        with self._guard:
            pool = self._pools.get(key)
            if pool is None:
                pool = concurrent.futures.ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"{self.name}-{key}"
                )
                self._pools[key] = pool
            return pool

    def call(self, key: str, fn: Callable[..., T], timeout: float, *args: Any) -> T:
        """
        Queue ``fn(*args)`` behind earlier calls for ``key`` and wait at most
        ``timeout`` seconds for it, time spent queued included.

        Raises:
            CallTimeout: If the call did not finish in time
            Exception: Whatever ``fn`` raised
        """
        future = self._pool_for(key).submit(fn, *args)
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        with self._guard:
            pools = list(self._pools.values())
        for pool in pools:
            pool.shutdown(wait=False)
