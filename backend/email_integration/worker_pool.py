"""
Dispatch Worker Pool

Bounded background execution for email dispatch:
- fixed number of asyncio workers reading job ids from a bounded queue
- each unit of work runs in its own database session
- each unit is limited to DISPATCH_TIMEOUT_SECONDS; on expiry the job is
  marked failed from a fresh session

submit() never blocks. When the queue is full it returns False and the
caller records the job as failed.
"""

import asyncio
import logging
from typing import List, Optional

from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


class DispatchWorkerPool:
    """
    Args:
        session_factory: async_sessionmaker producing AsyncSession
        processor: object with async process(session, job_id) and fail(session, job_id, error)
        workers: number of concurrent dispatch units
        queue_size: maximum job ids waiting for a worker
        timeout_seconds: wall-clock limit for one unit
    """

    def __init__(
        self,
        session_factory,
        processor,
        workers: int = 4,
        queue_size: int = 100,
        timeout_seconds: float = 300.0,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.workers = max(1, workers)
        self.timeout_seconds = timeout_seconds
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def submit(self, job_id: str) -> bool:
        try:
            self.queue.put_nowait(job_id)
        except asyncio.QueueFull:
            logger.warning(f"Dispatch queue full ({self.queue.maxsize}); rejecting job {job_id}")
            return False
        logger.debug(f"Queued email job {job_id} ({self.queue.qsize()} waiting)")
        return True

    def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"email-dispatch-{index}")
            for index in range(self.workers)
        ]
        logger.info(
            f"Dispatch pool started (workers={self.workers}, "
            f"queue={self.queue.maxsize}, timeout={self.timeout_seconds}s)"
        )

    async def stop(self, drain_timeout: float = 10.0):
        """Let queued units finish for up to drain_timeout, then cancel the workers."""
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dispatch pool stopping with {self.queue.qsize()} jobs still queued")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Dispatch pool stopped")

    async def _worker(self, index: int):
        while True:
            job_id = await self.queue.get()
            try:
                await self.run_unit(job_id)
            finally:
                self.queue.task_done()

    async def run_unit(self, job_id: str):
        """Run one dispatch in its own session under the pool timeout."""
        try:
            await asyncio.wait_for(self._process(job_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            message = f"Email dispatch timed out after {self.timeout_seconds:g} seconds"
            logger.error(f"Email job {job_id}: {message}")
            await self._fail(job_id, message)
        except Exception as e:
            logger.error(f"Email job {job_id} dispatch crashed: {e}", exc_info=True)
            capture_exception(e, email_job_id=job_id)
            await self._fail(job_id, f"Email dispatch failed: {e}")

    async def _process(self, job_id: str):
        async with self.session_factory() as session:
            await self.processor.process(session, job_id)

    async def _fail(self, job_id: str, message: str):
        try:
            async with self.session_factory() as session:
                await self.processor.fail(session, job_id, message)
        except Exception as e:
            logger.error(f"Could not record failure for email job {job_id}: {e}")
            capture_exception(e, email_job_id=job_id)


_pool: Optional[DispatchWorkerPool] = None


def get_dispatch_pool() -> Optional[DispatchWorkerPool]:
    return _pool


def set_dispatch_pool(pool: Optional[DispatchWorkerPool]):
    global _pool
    _pool = pool


def submit_job(job_id: str) -> bool:
    """Queue a job on the process-wide pool; False when no pool is running or it is full."""
    if _pool is None:
        logger.error(f"No dispatch pool running; cannot queue email job {job_id}")
        return False
    return _pool.submit(job_id)
