"""Scheduler: Fixed-interval job runner without overlap.

The delay before the next run is ``max(0, interval - elapsed)``, so runs
stay on cadence, and a run that takes as long as the interval (or longer)
is followed immediately by the next one. A run is never started while the
previous one is still in flight; a trigger that arrives during a run is
skipped and logged. An exception in a job is logged and the loop goes on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


def next_delay(interval: float, elapsed: float) -> float:
    """Seconds to wait after a run that took ``elapsed`` seconds.

    .. code-block:: python

        >>> next_delay(60, 15)
        45
        >>> next_delay(60, 75)
        0
    """
    return max(0, interval - elapsed)


class Scheduler:
    """Runs one async job on a fixed interval.

    :ivar name: Job name used in log messages.
    :ivar interval: Seconds between run starts.
    :ivar runs: Number of completed runs.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the scheduler.

        :param name: Job name.
        :param job: Coroutine function to run.
        :param interval: Seconds between runs (must be positive).
        :param clock: Monotonic clock used to measure run time.
        :raises ValueError: If the interval is not positive.
        """
        if interval <= 0:
            raise ValueError("Scheduler interval must be positive")
        self.name = name
        self.job = job
        self.interval = interval
        self.runs = 0
        self._clock = clock
        self._in_flight = False
        self._stopped = asyncio.Event()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run_once(self) -> float | None:
        """Run the job unless it is already running.

        :returns: Elapsed seconds, or None if the run was skipped.
        """
        if self._in_flight:
            logger.warning(f"[{self.name}] previous run still in flight; skipping")
            return None

        self._in_flight = True
        started = self._clock()
        try:
            await self.job()
        except Exception:
            logger.exception(f"[{self.name}] run failed")
        finally:
            self._in_flight = False
        elapsed = self._clock() - started
        self.runs += 1
        logger.debug(f"[{self.name}] run {self.runs} took {elapsed:.1f}s")
        return elapsed

    async def run_forever(self) -> None:
        """Run until :meth:`stop` is called."""
        logger.info(f"[{self.name}] starting, every {self.interval:g}s")
        while not self._stopped.is_set():
            elapsed = await self.run_once()
            delay = next_delay(self.interval, elapsed or 0.0)
            if delay == 0:
                logger.warning(f"[{self.name}] run took {elapsed:.1f}s (>= interval); starting next now")
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info(f"[{self.name}] stopped after {self.runs} run(s)")

    def stop(self) -> None:
        """Ask the loop to exit after the current run."""
        self._stopped.set()
