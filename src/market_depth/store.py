"""SQLite-backed storage for tracked items and order-book records.

This module provides:
- Schema for items + buy orders + sell orders
- Persistence with a one-hour dedup window and a global retention sweep
- Latest/summary reads and time-bucketed aggregation for series queries

Timestamps are stored as fixed-width ISO-8601 UTC strings so that string
comparison in SQL is chronological comparison.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from .models import (
    AggregatedBucket,
    Granularity,
    OrderRecord,
    PricePoint,
    Side,
    StoreSummary,
    TrackedItem,
)

logger = logging.getLogger(__name__)

# Constants
DEFAULT_DB_PATH = Path("data/market_depth.db")
DEFAULT_RETENTION_DAYS = 30
DEDUP_WINDOW = timedelta(hours=1)


class StorageFailure(Exception):
    """Raised when the durable store rejects a read or write."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _format_ts(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def _order_table(side: Side) -> str:
    if side is Side.BUY:
        return "buy_orders"
    if side is Side.SELL:
        return "sell_orders"
    raise ValueError(f"Unhandled side: {side!r}")


def hour_window(now: datetime) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC hour containing now."""
    start = now.astimezone(UTC).replace(minute=0, second=0, microsecond=0)
    return start, start + DEDUP_WINDOW


def aggregate_buckets(
    points: Sequence[PricePoint], granularity: Granularity
) -> list[AggregatedBucket]:
    """Group points into time buckets and roll each bucket up.

    Buckets are emitted in the order their first point appears, so a
    timestamp-ascending input yields chronological output. Empty buckets are
    never emitted.
    """
    groups: dict[datetime, list[PricePoint]] = {}
    for point in points:
        groups.setdefault(granularity.truncate(point.collected_at), []).append(point)

    buckets = []
    for start, members in groups.items():
        prices = [p.price for p in members]
        buckets.append(
            AggregatedBucket(
                time=start,
                avg_price=sum(prices, Decimal("0")) / len(prices),
                min_price=min(prices),
                max_price=max(prices),
                total_quantity=sum(p.quantity for p in members),
                order_count=len(members),
            )
        )
    return buckets


class OrderStore:
    """SQLite database of tracked items and their buy/sell order snapshots.

    Manages:
    - items: Tracked instruments, unique by external catalog id
    - buy_orders: Buy-side records per item and collection instant
    - sell_orders: Sell-side records per item and collection instant
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize store.

        Args:
            db_path: Path to SQLite database file
            retention_days: Records older than this are purged on every write
            clock: Source of the current UTC time
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> OrderStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()

    def init_schema(self) -> None:
        """Create database schema if not exists."""
        conn = self._get_connection()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                last_updated TEXT
            )
        """)

        for side in Side:
            table = _order_table(side)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id INTEGER NOT NULL,
                    price TEXT NOT NULL,
                    quantity INTEGER NOT NULL CHECK(quantity > 0),
                    collected_at TEXT NOT NULL,
                    FOREIGN KEY (item_id) REFERENCES items(id) ON DELETE CASCADE
                )
            """)
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_item_time "
                f"ON {table}(item_id, collected_at)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_time ON {table}(collected_at)"
            )

        conn.commit()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> TrackedItem:
        return TrackedItem(
            id=row["id"],
            external_id=row["external_id"],
            name=row["name"],
            last_updated=_parse_ts(row["last_updated"]) if row["last_updated"] else None,
        )

    def upsert_item(self, external_id: str, name: str) -> TrackedItem:
        """Insert an item, or update its name and timestamp if it exists.

        Raises:
            StorageFailure: If the database rejects the write.
        """
        conn = self._get_connection()
        now = _format_ts(self._clock())
        try:
            conn.execute(
                """
                INSERT INTO items (external_id, name, last_updated) VALUES (?, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    name = excluded.name,
                    last_updated = excluded.last_updated
                """,
                (external_id, name, now),
            )
            row = conn.execute(
                "SELECT * FROM items WHERE external_id = ?", (external_id,)
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFailure(f"Failed to upsert item {external_id}: {e}") from e

        return self._row_to_item(row)

    def touch_item(self, item_id: int) -> None:
        """Record a successful collection for an item."""
        conn = self._get_connection()
        try:
            conn.execute(
                "UPDATE items SET last_updated = ? WHERE id = ?",
                (_format_ts(self._clock()), item_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFailure(f"Failed to update item {item_id}: {e}") from e

    def list_items(self) -> list[TrackedItem]:
        try:
            rows = self._get_connection().execute("SELECT * FROM items ORDER BY id").fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to list items: {e}") from e
        return [self._row_to_item(r) for r in rows]

    def get_item(self, item_id: int) -> TrackedItem | None:
        try:
            row = (
                self._get_connection()
                .execute("SELECT * FROM items WHERE id = ?", (item_id,))
                .fetchone()
            )
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read item {item_id}: {e}") from e
        return self._row_to_item(row) if row else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def persist(self, side: Side, records: Sequence[OrderRecord]) -> int:
        """Persist one side's batch, replacing this hour's earlier generation.

        Within one transaction: delete the batch items' records of this side
        collected during the current UTC hour, delete every record of this
        side older than the retention horizon, then insert the batch.

        Args:
            side: Side shared by every record in the batch
            records: Records to insert

        Returns:
            Number of records inserted

        Raises:
            StorageFailure: If any step fails; prior state is kept.
        """
        if not records:
            return 0

        table = _order_table(side)
        now = self._clock()
        window_start, window_end = hour_window(now)
        cutoff = now - self.retention
        item_ids = sorted({r.item_id for r in records})

        conn = self._get_connection()
        try:
            placeholders = ", ".join("?" for _ in item_ids)
            replaced = conn.execute(
                f"""
                DELETE FROM {table}
                WHERE item_id IN ({placeholders})
                  AND collected_at >= ? AND collected_at < ?
                """,
                (*item_ids, _format_ts(window_start), _format_ts(window_end)),
            ).rowcount

            expired = conn.execute(
                f"DELETE FROM {table} WHERE collected_at < ?",
                (_format_ts(cutoff),),
            ).rowcount

            conn.executemany(
                f"""
                INSERT INTO {table} (item_id, price, quantity, collected_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (r.item_id, str(r.price), r.quantity, _format_ts(r.collected_at))
                    for r in records
                ],
            )
            conn.commit()
        except Exception as e:
            # Any failure, not only sqlite3.Error, must leave no pending writes
            conn.rollback()
            raise StorageFailure(f"Failed to persist {len(records)} {side.value} orders: {e}") from e

        if replaced > 0:
            logger.info("replaced_window_orders side=%s count=%d", side.value, replaced)
        if expired > 0:
            logger.info(
                "pruned_old_orders side=%s count=%d retention_days=%d",
                side.value,
                expired,
                self.retention.days,
            )
        logger.info("Saved %d %s orders to database", len(records), side.value)
        return len(records)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_order(row: sqlite3.Row, side: Side) -> OrderRecord:
        return OrderRecord(
            item_id=row["item_id"],
            side=side,
            price=Decimal(row["price"]),
            quantity=row["quantity"],
            collected_at=_parse_ts(row["collected_at"]),
        )

    def latest(self, item_id: int, side: Side, limit: int = 100) -> list[OrderRecord]:
        """Most recent records for an item and side, newest first.

        Raises:
            StorageFailure: If the read fails.
        """
        table = _order_table(side)
        try:
            rows = (
                self._get_connection()
                .execute(
                    f"""
                    SELECT * FROM {table}
                    WHERE item_id = ?
                    ORDER BY collected_at DESC, id ASC
                    LIMIT ?
                    """,
                    (item_id, max(0, limit)),
                )
                .fetchall()
            )
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read latest {side.value} orders: {e}") from e
        return [self._row_to_order(r, side) for r in rows]

    def side_orders(self, item_id: int, side: Side) -> list[OrderRecord]:
        """Every stored record of one side for an item, in insertion order."""
        table = _order_table(side)
        try:
            rows = (
                self._get_connection()
                .execute(f"SELECT * FROM {table} WHERE item_id = ? ORDER BY id", (item_id,))
                .fetchall()
            )
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read {side.value} orders: {e}") from e
        return [self._row_to_order(r, side) for r in rows]

    def summary(self) -> StoreSummary:
        """Global item and order counts.

        Raises:
            StorageFailure: If the read fails.
        """
        conn = self._get_connection()
        try:
            total_items = conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
            buy_count = conn.execute(
                f"SELECT COUNT(*) FROM {_order_table(Side.BUY)}"
            ).fetchone()[0]
            sell_count = conn.execute(
                f"SELECT COUNT(*) FROM {_order_table(Side.SELL)}"
            ).fetchone()[0]
            last_raw = conn.execute("SELECT MAX(last_updated) FROM items").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read summary: {e}") from e

        return StoreSummary(
            total_items=total_items,
            total_buy_orders=buy_count,
            total_sell_orders=sell_count,
            last_update=_parse_ts(last_raw) if last_raw else None,
        )

    def _points_since(self, item_id: int, side: Side, lookback_days: int) -> list[PricePoint]:
        table = _order_table(side)
        cutoff = self._clock() - timedelta(days=lookback_days)
        rows = (
            self._get_connection()
            .execute(
                f"""
                SELECT price, quantity, collected_at FROM {table}
                WHERE item_id = ? AND collected_at >= ?
                ORDER BY collected_at ASC, id ASC
                """,
                (item_id, _format_ts(cutoff)),
            )
            .fetchall()
        )
        return [
            PricePoint(
                price=Decimal(r["price"]),
                quantity=r["quantity"],
                collected_at=_parse_ts(r["collected_at"]),
            )
            for r in rows
        ]

    def time_series(
        self,
        item_id: int,
        side: Side,
        granularity: Granularity | str = Granularity.HOUR,
        lookback_days: int = 7,
    ) -> list[AggregatedBucket]:
        """Time-bucketed aggregates over the lookback window.

        Best effort: storage errors are logged and yield an empty list.
        """
        try:
            points = self._points_since(item_id, side, lookback_days)
        except sqlite3.Error:
            logger.exception(
                "Error getting orders by time grouping for item %s side=%s", item_id, side.value
            )
            return []
        return aggregate_buckets(points, Granularity.parse(granularity))

    def price_history(self, item_id: int, side: Side, lookback_days: int = 7) -> list[PricePoint]:
        """Raw price points over the lookback window, oldest first.

        Best effort: storage errors are logged and yield an empty list.
        """
        try:
            return self._points_since(item_id, side, lookback_days)
        except sqlite3.Error:
            logger.exception(
                "Error getting price history for item %s side=%s", item_id, side.value
            )
            return []


def init_order_store(
    db_path: Path | str | None = None,
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> OrderStore:
    """Open a store and make sure its schema exists."""
    store = OrderStore(db_path, retention_days=retention_days)
    store.init_schema()
    return store
