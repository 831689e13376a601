"""JobScheduler: Recurring async job with overlap protection.

A timer task fires the job every ``interval`` seconds. Each firing runs as
its own task, so a slow job does not delay the timer. A firing that finds
the previous run still in flight is skipped rather than queued.

.. code-block:: python

    scheduler = JobScheduler("oracle-cycle", 30.0, oracle.run_oracle_cycle)
    scheduler.start()
    ...
    await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class JobScheduler:
    """Runs one async job on a fixed interval, skipping overlapping runs.

    :ivar name: Job name used in log lines.
    :ivar interval: Seconds between firings.
    :ivar run_immediately: Fire once as soon as the scheduler starts.
    :ivar completed_ticks: Runs that finished (successfully or not).
    :ivar skipped_ticks: Firings skipped because a run was in flight.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = True,
    ) -> None:
        """Initialize the scheduler.

        :param name: Job name.
        :param interval: Seconds between firings.
        :param job: Coroutine function to run.
        :param run_immediately: Fire once on start instead of after one interval.
        :raises ValueError: If interval is not positive.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.name = name
        self.interval = interval
        self.run_immediately = run_immediately
        self.completed_ticks = 0
        self.skipped_ticks = 0
        self._job = job
        self._lock = threading.Lock()
        self._timer: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        """True while a run of the job is in flight."""
        return self._lock.locked()

    @property
    def is_started(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def tick(self) -> bool:
        """Run the job once unless a run is already in flight.

        Exceptions raised by the job are logged and swallowed so the next
        firing still happens.

        :returns: True if the job ran, False if this firing was skipped.
        """
        if not self._lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning(f"{self.name}: previous run still in flight, skipping tick")
            return False

        try:
            await self._job()
        except Exception as e:
            logger.error(f"{self.name}: run failed: {e}")
        finally:
            self.completed_ticks += 1
            self._lock.release()
        return True

    def fire(self) -> asyncio.Task:
        """Start one run of the job as a tracked background task."""
        task = asyncio.create_task(self.tick(), name=f"{self.name}-tick")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def start(self) -> None:
        """Start the timer on the running event loop."""
        if self.is_started:
            return
        self._timer = asyncio.create_task(self._run(), name=f"{self.name}-timer")
        logger.info(f"{self.name}: scheduled every {self.interval}s")

    async def shutdown(self) -> None:
        """Stop the timer and wait for the in-flight run to finish.

        The in-flight run is not cancelled.
        """
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        if self._inflight:
            logger.info(f"{self.name}: waiting for in-flight run to finish")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info(f"{self.name}: stopped")

    async def _run(self) -> None:
        if self.run_immediately:
            self.fire()
        while True:
            await asyncio.sleep(self.interval)
            self.fire()
