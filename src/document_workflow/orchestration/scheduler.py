"""Timer abstraction used for retry backoff and poll scheduling.

Waiting always suspends the calling coroutine; it never blocks a thread.
Tests substitute a virtual-clock implementation to make timing assertions
deterministic.
"""

import asyncio
from abc import ABC, abstractmethod


class Scheduler(ABC):
    """Clock and non-blocking sleep."""

    @abstractmethod
    def now(self) -> float:
        """Return a monotonic timestamp in seconds."""
        pass

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        """Suspend the calling coroutine for ``delay`` seconds."""
        pass


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
