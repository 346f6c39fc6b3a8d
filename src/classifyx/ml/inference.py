"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> TFLite classifier

Requests beyond the semaphore limit wait up to ``queue_timeout`` seconds,
then get 503. Each classifier additionally serializes its own calls, so a
session never sees two inferences at once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from classifyx.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    active: int
    queued: int


class InferencePool:
    """Bounds concurrent inference calls and runs them off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="tflite-inference",
        )
        self._active = 0
        self._queued = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking callable in the inference thread pool.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        self._adjust(queued=1)
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Inference queue timeout after %.1fs", self._timeout)
            raise
        finally:
            self._adjust(queued=-1)

        self._adjust(active=1)
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            self._adjust(active=-1)

    def stats(self) -> PoolStats:
        with self._counter_lock:
            return PoolStats(active=self._active, queued=self._queued)

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        return self.stats().active

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        return self.stats().queued

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)

    def _adjust(self, *, active: int = 0, queued: int = 0) -> None:
        with self._counter_lock:
            self._active += active
            self._queued += queued
