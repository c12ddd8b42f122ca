"""Domain types for order-book depth collection.

All timestamps are timezone-aware UTC datetimes. Prices are Decimals so that
aggregation never drifts through float rounding.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class Side(Enum):
    """Which half of the order book a record belongs to."""

    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: str | Side | None) -> Side | None:
        """Parse a side from user input; None means "both sides".

        Raises:
            ValueError: If the value is neither buy nor sell.
        """
        if value is None or isinstance(value, Side):
            return value
        normalized = value.strip().lower()
        for side in cls:
            if side.value == normalized:
                return side
        raise ValueError(f"Unknown order side: {value!r} (expected 'buy' or 'sell')")


class Granularity(Enum):
    """Bucket width for time-series aggregation."""

    HOUR = "hour"
    DAY = "day"

    @classmethod
    def parse(cls, value: str | Granularity | None) -> Granularity:
        """Lenient parse: anything unrecognized falls back to hourly buckets."""
        if isinstance(value, Granularity):
            return value
        if value:
            normalized = value.strip().lower()
            for granularity in cls:
                if granularity.value == normalized:
                    return granularity
        return cls.HOUR

    def truncate(self, ts: datetime) -> datetime:
        """Return the start of the bucket containing ts."""
        if self is Granularity.DAY:
            return ts.replace(hour=0, minute=0, second=0, microsecond=0)
        return ts.replace(minute=0, second=0, microsecond=0)


@dataclass
class TrackedItem:
    """A market instrument whose order book is sampled."""

    id: int
    external_id: str
    name: str
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "externalId": self.external_id,
            "name": self.name,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass(frozen=True)
class OrderRecord:
    """One observed order-book level at one collection instant.

    A zero price marks the synthetic aggregate record that carries the
    source's reported total order count for the side.
    """

    item_id: int
    side: Side
    price: Decimal
    quantity: int
    collected_at: datetime

    @property
    def is_aggregate(self) -> bool:
        return self.price == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "side": self.side.value,
            "price": str(self.price),
            "quantity": self.quantity,
            "collectedAt": self.collected_at.isoformat(),
        }


@dataclass(frozen=True)
class PricePoint:
    """Raw (price, quantity, timestamp) row of a price-history read."""

    price: Decimal
    quantity: int
    collected_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": str(self.price),
            "quantity": self.quantity,
            "collectedAt": self.collected_at.isoformat(),
        }


@dataclass(frozen=True)
class AggregatedBucket:
    """Roll-up of all records whose timestamp falls in one bucket.

    Computed on read, never persisted.
    """

    time: datetime
    avg_price: Decimal
    min_price: Decimal
    max_price: Decimal
    total_quantity: int
    order_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time.isoformat(),
            "avgPrice": str(self.avg_price),
            "minPrice": str(self.min_price),
            "maxPrice": str(self.max_price),
            "totalQuantity": self.total_quantity,
            "orderCount": self.order_count,
        }


@dataclass(frozen=True)
class StoreSummary:
    """Global counts across the store."""

    total_items: int
    total_buy_orders: int
    total_sell_orders: int
    last_update: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "totalBuyOrders": self.total_buy_orders,
            "totalSellOrders": self.total_sell_orders,
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
        }
