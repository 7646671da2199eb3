import asyncio
from typing import Optional

from loguru import logger

from evo_dispatch.errors import GateTimeoutError
from evo_dispatch.retry import Clock, Sleep, loop_time


class RateLimitGate:
    """Fixed-delay gate shared by dispatch workers.

    Successive acquisitions are spaced at least ``min_interval`` seconds apart,
    measured from the previous acquisition. The first acquisition never waits.
    Acquisition is serialized; with a timeout it raises GateTimeoutError
    instead of waiting past the deadline.
    """

    def __init__(
        self,
        min_interval: float,
        sleep: Optional[Sleep] = None,
        clock: Optional[Clock] = None,
    ):
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")
        self.min_interval = min_interval
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or loop_time
        self.logger = logger
        self._lock = asyncio.Lock()
        self._last_acquired: Optional[float] = None

    async def acquire(self, timeout: Optional[float] = None) -> float:
        """Wait for the next slot and return how long the caller was held"""
        start_time = self.clock()
        deadline = None if timeout is None else start_time + timeout

        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise GateTimeoutError(f"Gate slot not acquired within {timeout}s") from e

        try:
            if self._last_acquired is not None:
                wait = self._last_acquired + self.min_interval - self.clock()
                if wait > 0:
                    if deadline is not None and self.clock() + wait > deadline:
                        raise GateTimeoutError(
                            f"Next gate slot is {wait:.2f}s away, past the {timeout}s deadline"
                        )
                    self.logger.debug(f"Rate limit gate holding caller for {wait:.2f}s")
                    await self.sleep(wait)
            self._last_acquired = self.clock()
        finally:
            self._lock.release()

        return self.clock() - start_time
