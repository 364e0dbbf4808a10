"""
Post-commit side-effect queue.

Mutations enqueue notify/broadcast/audit jobs after their write has committed.
A small pool of workers drains the queue; a job failure is retried up to its
own attempt budget with exponential backoff, then logged and counted. Nothing
here ever raises into the request that enqueued the job.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ctms.config import settings
from ctms.engine.errors import DownstreamSideEffectFailure
from ctms.observability.metrics import metrics

logger = logging.getLogger("ctms.side_effects")

JobFn = Callable[[], Awaitable[None]]


@dataclass
class SideEffectJob:
    """One unit of post-commit work."""

    name: str
    run: JobFn
    max_attempts: int = 1
    backoff_seconds: float = 0.0


class SideEffectQueue:
    """Bounded asyncio queue with a fixed worker pool and an explicit drain point."""

    def __init__(
        self,
        workers: int | None = None,
        maxsize: int | None = None,
    ):
        self.worker_count = workers or settings.side_effect_workers
        self._queue: asyncio.Queue[Optional[SideEffectJob]] = asyncio.Queue(
            maxsize=maxsize or settings.side_effect_queue_size
        )
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Spawn the worker tasks. Idempotent."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ctms-side-effects-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Side-effect queue started with {self.worker_count} worker(s)")

    def enqueue(self, job: SideEffectJob) -> bool:
        """
        Schedule a job without waiting.

        Returns False if the job was dropped because the queue is full.
        """
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            metrics.inc_counter("side_effects.dropped")
            logger.error(f"Side-effect queue full, dropping job {job.name}")
            return False
        metrics.set_gauge("side_effects.pending", self._queue.qsize())
        return True

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Wait until every enqueued job has finished (success or final failure).

        Returns False if the timeout elapsed first.
        """
        timeout = settings.side_effect_drain_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Side-effect drain timed out after {timeout}s with {self._queue.qsize()} pending"
            )
            return False

    async def stop(self, timeout: float | None = None) -> None:
        """Drain, then stop the workers."""
        if not self._workers:
            return
        await self.drain(timeout)
        for _ in self._workers:
            # A full queue means drain timed out; cancellation below handles it
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                break
        done, pending = await asyncio.wait(self._workers, timeout=1.0)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        logger.info("Side-effect queue stopped")

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._run(job)
            finally:
                self._queue.task_done()
                metrics.set_gauge("side_effects.pending", self._queue.qsize())

    async def _run(self, job: SideEffectJob) -> None:
        attempts = max(job.max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                with metrics.timer(f"side_effects.{job.name}.duration_ms"):
                    await job.run()
                metrics.inc_counter("side_effects.completed")
                return
            except Exception as e:
                if attempt >= attempts:
                    failure = DownstreamSideEffectFailure(job.name, attempt, e)
                    metrics.inc_counter("side_effects.failed")
                    metrics.inc_counter(f"side_effects.{job.name}.failed")
                    logger.error(failure.message, exc_info=True)
                    return
                delay = job.backoff_seconds * (2 ** (attempt - 1))
                metrics.inc_counter("side_effects.retried")
                logger.warning(
                    f"Side effect {job.name} failed (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)


_queue: Optional[SideEffectQueue] = None


def get_side_effect_queue() -> SideEffectQueue:
    """Return the process-wide queue, creating it on first use."""
    global _queue
    if _queue is None:
        _queue = SideEffectQueue()
    return _queue


async def start_side_effects() -> SideEffectQueue:
    queue = get_side_effect_queue()
    queue.start()
    return queue


async def stop_side_effects() -> None:
    """Graceful shutdown: flush pending jobs, then stop workers."""
    global _queue
    if _queue is not None:
        await _queue.stop()
    _queue = None
