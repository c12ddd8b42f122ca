"""Tests for the collection orchestrator."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from market_depth.fetcher import ExhaustedRetries
from market_depth.models import OrderRecord, Side, TrackedItem
from market_depth.orchestrator import CollectionOrchestrator, RunState
from market_depth.store import OrderStore, StorageFailure

NOW = datetime(2024, 3, 10, 1, 10, tzinfo=UTC)


class FakeFetcher:
    """Returns one order per call; raises for external ids listed in ``failing``."""

    def __init__(self, failing: set[str] | None = None, block_on: str | None = None):
        self.failing = failing or set()
        self.block_on = block_on
        self.calls: list[tuple[str, Side]] = []
        self.blocked = asyncio.Event() if block_on else None

    async def fetch(self, item: TrackedItem, side: Side) -> list[OrderRecord]:
        self.calls.append((item.external_id, side))
        if item.external_id in self.failing:
            raise ExhaustedRetries("boom", last_error=None, attempts=3)
        if item.external_id == self.block_on:
            self.blocked.set()
            await asyncio.Event().wait()
        price = Decimal("10") if side is Side.BUY else Decimal("11")
        return [
            OrderRecord(
                item_id=item.id, side=side, price=price, quantity=1, collected_at=NOW
            )
        ]


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def store(tmp_path: Path):
    db = OrderStore(tmp_path / "orchestrator.db", clock=lambda: NOW)
    db.init_schema()
    yield db
    db.close()


def _seed(store: OrderStore, count: int) -> list[TrackedItem]:
    return [store.upsert_item(str(100 + i), f"Item {i}") for i in range(count)]


class TestCollect:
    def test_collects_both_sides_for_every_item(self, store: OrderStore) -> None:
        items = _seed(store, 2)
        fetcher = FakeFetcher()
        sleeper = SleepRecorder()
        orchestrator = CollectionOrchestrator(fetcher, store, sleep=sleeper)

        report = asyncio.run(orchestrator.collect())

        assert report.state is RunState.COMPLETED
        assert orchestrator.state is RunState.COMPLETED
        assert report.items_total == 2
        assert report.items_succeeded == 2
        assert report.buy_records == 2
        assert report.sell_records == 2
        assert fetcher.calls == [
            ("100", Side.BUY),
            ("100", Side.SELL),
            ("101", Side.BUY),
            ("101", Side.SELL),
        ]
        for item in items:
            assert len(store.latest(item.id, Side.BUY, 10)) == 1
            assert len(store.latest(item.id, Side.SELL, 10)) == 1

    def test_paces_between_items(self, store: OrderStore) -> None:
        _seed(store, 3)
        sleeper = SleepRecorder()
        orchestrator = CollectionOrchestrator(
            FakeFetcher(), store, request_delay_seconds=1.0, sleep=sleeper
        )

        asyncio.run(orchestrator.collect())

        assert sleeper.delays == [1.0, 1.0]

    def test_no_items_completes_immediately(self, store: OrderStore) -> None:
        fetcher = FakeFetcher()
        orchestrator = CollectionOrchestrator(fetcher, store, sleep=SleepRecorder())

        report = asyncio.run(orchestrator.collect())

        assert report.state is RunState.COMPLETED
        assert report.items_total == 0
        assert fetcher.calls == []

    def test_empty_fetch_result_is_not_persisted(self, store: OrderStore) -> None:
        class EmptyFetcher:
            async def fetch(self, item: TrackedItem, side: Side) -> list[OrderRecord]:
                return []

        persisted: list[Side] = []
        original = store.persist

        def tracking_persist(side, records):
            persisted.append(side)
            return original(side, records)

        store.persist = tracking_persist
        _seed(store, 1)

        report = asyncio.run(
            CollectionOrchestrator(EmptyFetcher(), store, sleep=SleepRecorder()).collect()
        )

        assert persisted == []
        assert report.items_succeeded == 1

    def test_successful_item_timestamp_is_updated(self, tmp_path: Path) -> None:
        clock_now = [NOW]
        db = OrderStore(tmp_path / "touch.db", clock=lambda: clock_now[0])
        db.init_schema()
        try:
            item = db.upsert_item("100", "Item")
            clock_now[0] = NOW.replace(hour=5)

            asyncio.run(CollectionOrchestrator(FakeFetcher(), db, sleep=SleepRecorder()).collect())

            assert db.get_item(item.id).last_updated == clock_now[0]
        finally:
            db.close()

    def test_item_without_orders_keeps_timestamp(self, tmp_path: Path) -> None:
        class EmptyFetcher:
            async def fetch(self, item: TrackedItem, side: Side) -> list[OrderRecord]:
                return []

        clock_now = [NOW]
        db = OrderStore(tmp_path / "untouched.db", clock=lambda: clock_now[0])
        db.init_schema()
        try:
            item = db.upsert_item("100", "Item")
            clock_now[0] = NOW.replace(hour=5)

            asyncio.run(
                CollectionOrchestrator(EmptyFetcher(), db, sleep=SleepRecorder()).collect()
            )

            assert db.get_item(item.id).last_updated == NOW
        finally:
            db.close()


class TestFaultIsolation:
    def test_failing_item_does_not_stop_run(self, store: OrderStore) -> None:
        first, second, third = _seed(store, 3)
        fetcher = FakeFetcher(failing={second.external_id})
        orchestrator = CollectionOrchestrator(fetcher, store, sleep=SleepRecorder())

        report = asyncio.run(orchestrator.collect())

        assert report.state is RunState.COMPLETED
        assert report.items_succeeded == 2
        assert report.items_failed == [second.external_id]
        assert len(store.latest(first.id, Side.BUY, 10)) == 1
        assert len(store.latest(third.id, Side.SELL, 10)) == 1
        assert store.latest(second.id, Side.BUY, 10) == []

    def test_persist_failure_is_isolated(self, store: OrderStore) -> None:
        first, second = _seed(store, 2)
        original = store.persist

        def flaky_persist(side, records):
            if records[0].item_id == first.id:
                raise StorageFailure("disk full")
            return original(side, records)

        store.persist = flaky_persist

        report = asyncio.run(
            CollectionOrchestrator(FakeFetcher(), store, sleep=SleepRecorder()).collect()
        )

        assert report.items_failed == [first.external_id]
        assert len(store.latest(second.id, Side.BUY, 10)) == 1


class TestCancellation:
    def test_cancel_mid_run_stops_before_remaining_items(self, store: OrderStore) -> None:
        first, second, third = _seed(store, 3)
        fetcher = FakeFetcher(block_on=second.external_id)
        orchestrator = CollectionOrchestrator(fetcher, store, sleep=SleepRecorder())

        async def scenario() -> None:
            task = asyncio.create_task(orchestrator.collect())
            await fetcher.blocked.wait()
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(scenario())

        assert orchestrator.state is RunState.CANCELLED
        assert orchestrator.last_report.state is RunState.CANCELLED
        assert len(store.latest(first.id, Side.BUY, 10)) == 1
        assert store.latest(second.id, Side.BUY, 10) == []
        assert store.latest(third.id, Side.BUY, 10) == []
        assert (third.external_id, Side.BUY) not in fetcher.calls

    def test_deadline_cancels_run(self, store: OrderStore) -> None:
        _, second, _ = _seed(store, 3)
        fetcher = FakeFetcher(block_on=second.external_id)
        orchestrator = CollectionOrchestrator(fetcher, store, sleep=SleepRecorder())

        async def scenario() -> None:
            async with asyncio.timeout(0.05):
                await orchestrator.collect()

        with pytest.raises(TimeoutError):
            asyncio.run(scenario())

        assert orchestrator.state is RunState.CANCELLED
