"""Worker threads for blocking work.

Session creation, image decoding and encoding, prediction and camera I/O run
here so the event loop stays responsive. At most ``max_concurrent`` calls run
at once; further callers wait on the semaphore without a timeout.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from fishid.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time load of the pool, as reported by the health endpoint."""

    capacity: int
    running: int
    waiting: int


class InferencePool:
    """Bounded worker pool shared by the model, ingest and camera components."""

    def __init__(self, settings: Settings) -> None:
        self._capacity = settings.max_concurrent
        self._semaphore = asyncio.Semaphore(self._capacity)
        self._executor = ThreadPoolExecutor(max_workers=self._capacity, thread_name_prefix="fishid-worker")
        # Only touched from the event loop thread.
        self._running = 0
        self._waiting = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free."""
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._running += 1
        try:
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        finally:
            self._running -= 1
            self._semaphore.release()

    def stats(self) -> PoolStats:
        return PoolStats(capacity=self._capacity, running=self._running, waiting=self._waiting)

    def shutdown(self) -> None:
        """Wait for running calls, then stop the worker threads."""
        self._executor.shutdown(wait=True)
        logger.debug("Worker pool stopped")
