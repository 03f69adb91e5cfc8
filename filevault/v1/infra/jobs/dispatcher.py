"""
Bounded execution of claimed jobs.

Behaves like a bounded thread pool on the event loop: a fixed set of core
consumers drains a bounded queue, extra consumers (up to the maximum) start
when the queue is full, and once everything is saturated the submitting task
runs the job itself. That last step slows the poll loop down instead of
dropping claimed work.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from filevault.config.settings import Settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[int], Awaitable[None]]


class DispatcherClosedError(RuntimeError):
    """Raised when submitting to a dispatcher that is shutting down."""


class ExecutionDispatcher:
    """Runs job ids through ``runner`` with bounded concurrency."""

    def __init__(self, settings: Settings, runner: JobRunner):
        self.runner = runner
        self.core_workers = settings.job_core_workers
        self.max_workers = settings.job_max_workers
        self.keepalive_s = settings.job_worker_keepalive_s
        self.shutdown_timeout_s = settings.job_shutdown_timeout_s

        self._queue: asyncio.Queue[int] = asyncio.Queue(
            maxsize=settings.job_queue_capacity
        )
        self._consumers: set[asyncio.Task] = set()
        self._extra_consumers = 0
        self._busy = 0
        self._started = False
        self._closed = False

        # Counters for health and tests
        self.inline_runs = 0
        self.peak_concurrency = 0

    @property
    def worker_count(self) -> int:
        return len(self._consumers)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    @property
    def active(self) -> int:
        return self._busy

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for index in range(self.core_workers):
            self._spawn(f"core-{index}", core=True)
        logger.info(
            "Execution dispatcher started",
            extra={
                "core_workers": self.core_workers,
                "max_workers": self.max_workers,
                "queue_capacity": self._queue.maxsize,
            },
        )

    async def submit(self, job_id: int) -> None:
        """
        Hand a claimed job to the pool.

        Returns once the job is queued, or, under caller-runs backpressure,
        once the submitting task has executed it inline.
        """
        if self._closed:
            raise DispatcherClosedError("Dispatcher is shut down")
        if not self._started:
            self.start()

        try:
            self._queue.put_nowait(job_id)
            return
        except asyncio.QueueFull:
            pass

        if len(self._consumers) < self.max_workers:
            self._extra_consumers += 1
            self._spawn(f"extra-{self._extra_consumers}", core=False)
            # The new consumer frees a slot as soon as it takes a job
            await self._queue.put(job_id)
            return

        self.inline_runs += 1
        logger.warning(
            "Job pool saturated, running job on submitting task",
            extra={"job_id": job_id, "queued": self._queue.qsize()},
        )
        await self._run(job_id)

    def _spawn(self, name: str, core: bool) -> None:
        task = asyncio.create_task(self._consume(core), name=f"job-executor-{name}")
        self._consumers.add(task)
        task.add_done_callback(self._consumers.discard)

    async def _consume(self, core: bool) -> None:
        while True:
            if core:
                job_id = await self._queue.get()
            else:
                try:
                    job_id = await asyncio.wait_for(
                        self._queue.get(), timeout=self.keepalive_s
                    )
                except TimeoutError:
                    # Idle extra consumer retires
                    return
            try:
                await self._run(job_id)
            finally:
                self._queue.task_done()

    async def _run(self, job_id: int) -> None:
        self._busy += 1
        self.peak_concurrency = max(self.peak_concurrency, self._busy)
        try:
            await self.runner(job_id)
        except Exception:
            # Runners handle their own failures; anything escaping is a bug
            logger.exception("Job runner raised", extra={"job_id": job_id})
        finally:
            self._busy -= 1

    async def join(self) -> None:
        """Wait until every queued job has been executed."""
        await self._queue.join()

    async def shutdown(self, timeout_s: float | None = None) -> bool:
        """
        Stop accepting work, drain the queue, then stop consumers.

        Returns True if the queue drained before the timeout.
        """
        self._closed = True
        timeout_s = self.shutdown_timeout_s if timeout_s is None else timeout_s
        drained = True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout_s)
        except TimeoutError:
            drained = False
            logger.warning(
                "Dispatcher shutdown timed out with jobs still queued",
                extra={"queued": self._queue.qsize(), "timeout_s": timeout_s},
            )

        consumers = list(self._consumers)
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
        logger.info("Execution dispatcher stopped", extra={"drained": drained})
        return drained
