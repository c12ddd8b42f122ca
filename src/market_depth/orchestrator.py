"""One collection run over every tracked item.

Items are processed strictly one after another, buy side then sell side,
with a fixed pause between items to stay under the market's rate limits.
A failing item is logged and skipped; cancelling the run's task stops it
before the next item is touched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .models import OrderRecord, Side, TrackedItem

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_DELAY_SECONDS = 1.0


class RunState(Enum):
    """Lifecycle of a collection run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderFetcher(Protocol):
    async def fetch(self, item: TrackedItem, side: Side) -> list[OrderRecord]: ...


class CollectionStore(Protocol):
    def list_items(self) -> list[TrackedItem]: ...

    def persist(self, side: Side, records: list[OrderRecord]) -> int: ...

    def touch_item(self, item_id: int) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CollectionReport:
    """Outcome of one collection run."""

    state: RunState = RunState.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    items_total: int = 0
    items_succeeded: int = 0
    items_failed: list[str] = field(default_factory=list)
    buy_records: int = 0
    sell_records: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "items_total": self.items_total,
            "items_succeeded": self.items_succeeded,
            "items_failed": list(self.items_failed),
            "buy_records": self.buy_records,
            "sell_records": self.sell_records,
        }


class CollectionOrchestrator:
    """Drives fetch-and-persist for every tracked item."""

    def __init__(
        self,
        fetcher: OrderFetcher,
        store: CollectionStore,
        *,
        request_delay_seconds: float = DEFAULT_REQUEST_DELAY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.store = store
        self.request_delay_seconds = request_delay_seconds
        self.state = RunState.IDLE
        self.last_report: CollectionReport | None = None
        self._clock = clock
        self._sleep = sleep

    async def _process_item(self, item: TrackedItem, report: CollectionReport) -> None:
        """Fetch and persist both sides of one item.

        The item's last-updated timestamp only moves when at least one side
        produced records.
        """
        buy_orders = await self.fetcher.fetch(item, Side.BUY)
        buy_saved = self.store.persist(Side.BUY, buy_orders) if buy_orders else 0
        report.buy_records += buy_saved

        sell_orders = await self.fetcher.fetch(item, Side.SELL)
        sell_saved = self.store.persist(Side.SELL, sell_orders) if sell_orders else 0
        report.sell_records += sell_saved

        if buy_saved or sell_saved:
            self.store.touch_item(item.id)

    async def collect(self) -> CollectionReport:
        """Run one collection pass over all tracked items.

        Returns:
            Report of the completed run.

        Raises:
            asyncio.CancelledError: If the run is cancelled; the report is
                still available as ``last_report`` with state CANCELLED.
        """
        report = CollectionReport(state=RunState.RUNNING, started_at=self._clock())
        self.last_report = report
        self.state = RunState.RUNNING

        try:
            items = self.store.list_items()
            report.items_total = len(items)

            if not items:
                logger.warning("No tracked items to collect")

            for index, item in enumerate(items):
                try:
                    await self._process_item(item, report)
                    report.items_succeeded += 1
                except Exception:
                    report.items_failed.append(item.external_id)
                    logger.exception(
                        "Error processing item %s (item_nameid=%s)", item.name, item.external_id
                    )

                if index < len(items) - 1:
                    await self._sleep(self.request_delay_seconds)

        except asyncio.CancelledError:
            report.state = RunState.CANCELLED
            report.finished_at = self._clock()
            self.state = RunState.CANCELLED
            logger.warning(
                "Collection cancelled after %d/%d items",
                report.items_succeeded + len(report.items_failed),
                report.items_total,
            )
            raise

        report.state = RunState.COMPLETED
        report.finished_at = self._clock()
        self.state = RunState.COMPLETED
        logger.info(
            "Collection completed items=%d succeeded=%d failed=%d buy_records=%d sell_records=%d",
            report.items_total,
            report.items_succeeded,
            len(report.items_failed),
            report.buy_records,
            report.sell_records,
        )
        return report
