"""Query and trigger surface over the order store.

Every method is a thin pass-through returning JSON-ready structures, so a web
layer or the CLI can expose them directly.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .models import Granularity, OrderRecord, Side
from .scheduler import CollectionTrigger
from .store import OrderStore

logger = logging.getLogger(__name__)

DEFAULT_ORDERS_LIMIT = 100
ANALYTICS_TOP_ORDERS = 20


def _sides(side: Side | None) -> list[Side]:
    """Requested side, or both sides (buy first) when unspecified."""
    if side is None:
        return [Side.BUY, Side.SELL]
    return [side]


def _side_stats(orders: list[OrderRecord]) -> dict[str, Any]:
    prices = [o.price for o in orders]
    return {
        "count": len(orders),
        "minPrice": str(min(prices)) if prices else None,
        "maxPrice": str(max(prices)) if prices else None,
        "totalQuantity": sum(o.quantity for o in orders),
        "orders": [
            {
                "price": str(o.price),
                "quantity": o.quantity,
                "collectedAt": o.collected_at.isoformat(),
            }
            for o in orders[:ANALYTICS_TOP_ORDERS]
        ],
    }


class AnalyticsService:
    """Facade over OrderStore reads and on-demand collection."""

    def __init__(self, store: OrderStore, trigger: CollectionTrigger | None = None):
        self.store = store
        self.trigger = trigger

    def get_summary(self) -> dict[str, Any]:
        return self.store.summary().to_dict()

    def get_items(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self.store.list_items()]

    def add_item(self, name: str, external_id: str) -> dict[str, Any]:
        item = self.store.upsert_item(external_id=external_id, name=name)
        logger.info("Tracked item %s (item_nameid=%s) id=%d", item.name, item.external_id, item.id)
        return item.to_dict()

    def get_item_orders(
        self, item_id: int, side: Side | None = None, limit: int = DEFAULT_ORDERS_LIMIT
    ) -> list[dict[str, Any]]:
        """Latest orders for one side, or both sides merged newest first."""
        take = max(1, limit)
        if side is not None:
            return [o.to_dict() for o in self.store.latest(item_id, side, take)]

        combined = self.store.latest(item_id, Side.BUY, take) + self.store.latest(
            item_id, Side.SELL, take
        )
        combined.sort(key=lambda o: o.collected_at, reverse=True)
        return [o.to_dict() for o in combined[:take]]

    def get_item_analytics(self, item_id: int) -> dict[str, Any] | None:
        """Per-side statistics for an item, or None if the item is unknown.

        Buy orders are listed cheapest first, sell orders dearest first.
        """
        item = self.store.get_item(item_id)
        if item is None:
            return None

        buy_orders = sorted(self.store.side_orders(item_id, Side.BUY), key=lambda o: o.price)
        sell_orders = sorted(
            self.store.side_orders(item_id, Side.SELL), key=lambda o: o.price, reverse=True
        )
        return {
            "item": item.to_dict(),
            "buyOrders": _side_stats(buy_orders),
            "sellOrders": _side_stats(sell_orders),
        }

    def get_item_time_series(
        self,
        item_id: int,
        side: Side | None = None,
        granularity: Granularity | str = Granularity.HOUR,
        lookback_days: int = 7,
    ) -> list[dict[str, Any]] | None:
        """Bucketed series per requested side, or None if the item is unknown."""
        if self.store.get_item(item_id) is None:
            return None

        bucket = Granularity.parse(granularity)
        return [
            {
                "type": s.value,
                "data": [
                    b.to_dict()
                    for b in self.store.time_series(item_id, s, bucket, lookback_days)
                ],
            }
            for s in _sides(side)
        ]

    def get_item_price_history(
        self, item_id: int, side: Side | None = None, lookback_days: int = 7
    ) -> dict[str, list[dict[str, Any]]]:
        return {
            s.value: [p.to_dict() for p in self.store.price_history(item_id, s, lookback_days)]
            for s in _sides(side)
        }

    def trigger_collection(self) -> dict[str, Any]:
        """Start a collection run in the background; never blocks.

        Raises:
            RuntimeError: If no trigger was configured.
        """
        if self.trigger is None:
            raise RuntimeError("No collection trigger configured")
        return self.trigger.trigger()

    def health(self) -> dict[str, Any]:
        return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat()}
