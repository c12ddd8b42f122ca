"""Periodic and on-demand triggering of collection runs.

The scheduler owns no business logic: it calls an injected collection job on
a fixed period and keeps going when a run fails. On-demand runs are detached
asyncio tasks with their own duration ceiling, so the caller never waits for
them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from .config import MarketDepthConfig
from .fetcher import MarketFetcher
from .market_client import ExternalMarketClient
from .orchestrator import CollectionOrchestrator, CollectionReport
from .store import OrderStore

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_SECONDS = 3600.0
DEFAULT_MANUAL_RUN_TIMEOUT_SECONDS = 300.0

CollectionJob = Callable[[], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def make_collection_job(config: MarketDepthConfig, store: OrderStore) -> CollectionJob:
    """Build a job that performs one full collection run per call.

    Each call opens its own HTTP client and closes it when the run ends.
    """

    async def run_collection() -> CollectionReport:
        async with ExternalMarketClient.from_config(config) as client:
            fetcher = MarketFetcher(
                client,
                max_attempts=config.max_attempts,
                timeout_seconds=config.request_timeout_seconds,
                max_levels=config.max_levels,
            )
            orchestrator = CollectionOrchestrator(
                fetcher,
                store,
                request_delay_seconds=config.request_delay_seconds,
            )
            return await orchestrator.collect()

    return run_collection


class Scheduler:
    """Runs the collection job immediately, then once per period.

    The full period elapses after each run finishes, so the effective
    interval is the period plus the run's duration.
    """

    def __init__(
        self,
        job: CollectionJob,
        *,
        period_seconds: float = DEFAULT_PERIOD_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.job = job
        self.period_seconds = period_seconds
        self.ticks = 0
        self._sleep = sleep
        self._running = False

    async def tick(self) -> bool:
        """Run the job once; failures are logged, never raised.

        Returns:
            True if the run finished without raising.
        """
        self.ticks += 1
        logger.info("Starting collection tick=%d at %s", self.ticks, _utcnow().isoformat())
        try:
            await self.job()
        except Exception:
            logger.exception("Error occurred while collecting order books")
            return False
        logger.info("Collection tick=%d completed at %s", self.ticks, _utcnow().isoformat())
        return True

    async def run_forever(self) -> None:
        """Loop until stop() is called or the task is cancelled."""
        self._running = True
        logger.info("Scheduler started, period=%.0fs", self.period_seconds)
        try:
            while self._running:
                await self.tick()
                if not self._running:
                    break
                await self._sleep(self.period_seconds)
        finally:
            self._running = False
            logger.info("Scheduler stopped after %d ticks", self.ticks)

    def stop(self) -> None:
        """Stop the loop after the current tick or sleep."""
        self._running = False


class CollectionTrigger:
    """Starts collection runs on demand without blocking the caller.

    Must be used from inside a running event loop. Each run is bounded by
    ``max_duration_seconds``; a run that exceeds it is cancelled.
    """

    def __init__(
        self,
        job: CollectionJob,
        *,
        max_duration_seconds: float = DEFAULT_MANUAL_RUN_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.job = job
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    async def _run(self) -> None:
        try:
            async with asyncio.timeout(self.max_duration_seconds):
                await self.job()
            logger.info("Manual collection completed")
        except TimeoutError:
            logger.warning(
                "Manual collection cancelled or timed out after %.0fs", self.max_duration_seconds
            )
        except Exception:
            logger.exception("Manual collection failed")

    def trigger(self) -> dict[str, Any]:
        """Start a run in the background and acknowledge immediately."""
        task = asyncio.get_running_loop().create_task(self._run())
        # Keep a strong reference until the task is done.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return {"message": "Collection started", "timestamp": self._clock().isoformat()}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """Wait for every run started so far to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


def run_scheduler(config: MarketDepthConfig, store: OrderStore) -> None:
    """Synchronous entry point to run the scheduler loop forever."""
    scheduler = Scheduler(
        make_collection_job(config, store),
        period_seconds=config.collect_interval_seconds,
    )
    asyncio.run(scheduler.run_forever())
