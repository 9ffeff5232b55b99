"""
Periodic background sweeps that never overlap their own previous run
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from shared.config.redis import RedisLock

logger = logging.getLogger(__name__)


class PeriodicSweep:
    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable],
        interval_seconds: float,
        redis_lock: Optional[RedisLock] = None
    ):
        self.name = name
        self.job = job
        self.interval_seconds = interval_seconds
        self.redis_lock = redis_lock
        self._lock = asyncio.Lock()
        self.running = False

    async def run_once(self):
        """Run the job unless a previous run (here or in another process) is still going.

        Returns the job's result, or None when the run was skipped.
        """
        if self._lock.locked():
            logger.warning(f"{self.name} sweep still running, tick skipped")
            return None

        async with self._lock:
            if self.redis_lock and not await self.redis_lock.acquire():
                logger.info(f"{self.name} sweep is running in another process, tick skipped")
                return None
            try:
                return await self.job()
            finally:
                if self.redis_lock:
                    await self.redis_lock.release()

    async def run_forever(self):
        self.running = True
        logger.info(f"Started {self.name} sweep every {self.interval_seconds}s")
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in {self.name} sweep: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def stop(self):
        self.running = False
