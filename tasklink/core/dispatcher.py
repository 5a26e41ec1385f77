"""
Keyed work dispatcher (per process).

Jobs submitted with the same key always land on the same worker queue, so they
run one at a time in submission order. Jobs with different keys spread over
``worker_count`` workers and run in parallel.

NOTE: ordering holds within one process. With several uvicorn workers, the
idempotent upserts downstream keep results consistent.
"""

import asyncio
import zlib
from typing import Any, Awaitable, Callable, List, Optional

from tasklink.core.config import settings
from tasklink.core.logging import get_logger

logger = get_logger(__name__)

Job = Callable[[], Awaitable[Any]]

# Global instance (Singleton per process)
_dispatcher: Optional["KeyedDispatcher"] = None


class KeyedDispatcher:
    def __init__(self, worker_count: Optional[int] = None):
        self.worker_count = max(worker_count or settings.SYNC_WORKER_COUNT, 1)
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    def slot_for(self, key: Any) -> int:
        return zlib.crc32(str(key).encode("utf-8")) % self.worker_count

    async def start(self) -> None:
        """Start the worker tasks."""
        if self.running:
            return
        self._queues = [asyncio.Queue() for _ in range(self.worker_count)]
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"sync-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("KeyedDispatcher: started %d workers.", self.worker_count)

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are dropped."""
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers = []
        logger.info("KeyedDispatcher: stopped.")

    async def submit(self, key: Any, job: Job) -> asyncio.Future:
        """
        Queue ``job`` behind earlier jobs with the same key.

        Returns a future resolved with the job's result or exception.
        """
        await self.start()
        future = asyncio.get_running_loop().create_future()
        queue = self._queues[self.slot_for(key)]
        queue.put_nowait((job, future))
        return future

    async def _worker_loop(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            job, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                result = await job()
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error("Worker %d job failed: %s", index, e, exc_info=True)
                if not future.done():
                    future.set_exception(e)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued job has run."""
        await asyncio.gather(*(queue.join() for queue in self._queues))


def get_dispatcher() -> KeyedDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = KeyedDispatcher()
    return _dispatcher
