"""Order histogram normalization.

The market reports each side of the book as a cumulative curve: every entry
is ``[price, quantity_at_or_better_than_price, ...]`` ordered from the best
price outward. This module turns that curve into discrete per-level order
records by differencing consecutive cumulative values.

All knowledge of the payload shape lives here. Nothing in this module does
I/O or raises on bad input: malformed data degrades to "no orders".
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .models import OrderRecord, Side

logger = logging.getLogger(__name__)

DEFAULT_MAX_LEVELS = 15

# Largest value a SQLite INTEGER column can hold
MAX_QUANTITY = 2**63 - 1

_GRAPH_KEYS = {Side.BUY: "buy_order_graph", Side.SELL: "sell_order_graph"}
_COUNT_KEYS = {Side.BUY: "buy_order_count", Side.SELL: "sell_order_count"}


@dataclass(frozen=True)
class HistogramSnapshot:
    """Typed view of one histogram payload.

    Levels are ``(price, cumulative_quantity)`` tuples in source order.
    Order counts are None when the source did not report a usable value.
    """

    buy_levels: list[tuple[Decimal, int]] = field(default_factory=list)
    sell_levels: list[tuple[Decimal, int]] = field(default_factory=list)
    buy_order_count: int | None = None
    sell_order_count: int | None = None

    def levels(self, side: Side) -> list[tuple[Decimal, int]]:
        if side is Side.BUY:
            return self.buy_levels
        if side is Side.SELL:
            return self.sell_levels
        raise ValueError(f"Unhandled side: {side!r}")

    def order_count(self, side: Side) -> int | None:
        if side is Side.BUY:
            return self.buy_order_count
        if side is Side.SELL:
            return self.sell_order_count
        raise ValueError(f"Unhandled side: {side!r}")


def parse_order_count(raw: Any) -> int | None:
    """Parse a reported order count such as ``"1,234"`` or ``1234``.

    Only digits are kept; anything without digits yields None. Floats are
    accepted only when integral. Counts beyond MAX_QUANTITY yield None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, float):
        if not math.isfinite(raw) or not raw.is_integer():
            return None
        count = int(raw)
    elif isinstance(raw, int):
        count = raw
    else:
        digits = "".join(ch for ch in str(raw) if ch.isdigit())
        if not digits:
            return None
        if len(digits) > len(str(MAX_QUANTITY)):
            logger.warning("Ignoring out-of-range order count %r", raw)
            return None
        count = int(digits)
    if count > MAX_QUANTITY:
        logger.warning("Ignoring out-of-range order count %r", raw)
        return None
    return count


def _parse_level(entry: Any) -> tuple[Decimal, int] | None:
    if not isinstance(entry, (list, tuple)) or len(entry) < 2:
        return None
    raw_price, raw_cumulative = entry[0], entry[1]
    if isinstance(raw_price, bool) or isinstance(raw_cumulative, bool):
        return None
    try:
        price = Decimal(str(raw_price))
        cumulative = int(raw_cumulative)
    except (InvalidOperation, OverflowError, TypeError, ValueError):
        return None
    if not price.is_finite() or price < 0:
        return None
    if not 0 <= cumulative <= MAX_QUANTITY:
        return None
    return price, cumulative


def _parse_levels(raw: Any) -> list[tuple[Decimal, int]]:
    if not isinstance(raw, list):
        return []
    levels = []
    for entry in raw:
        level = _parse_level(entry)
        if level is not None:
            levels.append(level)
    return levels


def parse_histogram(payload: Any) -> HistogramSnapshot:
    """Parse a decoded histogram payload into a HistogramSnapshot.

    A payload that is not a JSON object yields an empty snapshot.
    """
    if not isinstance(payload, dict):
        logger.warning("Histogram payload is not an object (got %s)", type(payload).__name__)
        return HistogramSnapshot()

    return HistogramSnapshot(
        buy_levels=_parse_levels(payload.get(_GRAPH_KEYS[Side.BUY])),
        sell_levels=_parse_levels(payload.get(_GRAPH_KEYS[Side.SELL])),
        buy_order_count=parse_order_count(payload.get(_COUNT_KEYS[Side.BUY])),
        sell_order_count=parse_order_count(payload.get(_COUNT_KEYS[Side.SELL])),
    )


def levels_to_orders(
    levels: list[tuple[Decimal, int]],
    *,
    item_id: int,
    side: Side,
    collected_at: datetime,
    max_levels: int = DEFAULT_MAX_LEVELS,
) -> list[OrderRecord]:
    """Convert a cumulative curve into discrete order records.

    The first level's quantity is its cumulative value; each later level's
    quantity is the increase over the previous cumulative value. Levels whose
    increase is not positive are dropped.
    """
    orders: list[OrderRecord] = []
    previous = 0
    for price, cumulative in levels:
        if len(orders) >= max_levels:
            break
        delta = cumulative - previous
        previous = cumulative
        if delta > 0:
            orders.append(
                OrderRecord(
                    item_id=item_id,
                    side=side,
                    price=price,
                    quantity=delta,
                    collected_at=collected_at,
                )
            )
    return orders


def normalize_snapshot(
    payload: Any,
    *,
    item_id: int,
    side: Side,
    collected_at: datetime,
    max_levels: int = DEFAULT_MAX_LEVELS,
) -> list[OrderRecord]:
    """Normalize one side of a histogram payload into order records.

    When the source reports a total order count for the side that differs
    from the quantity on the parsed curve, a synthetic zero-price record
    carrying that total is appended.
    """
    snapshot = parse_histogram(payload)
    orders = levels_to_orders(
        snapshot.levels(side),
        item_id=item_id,
        side=side,
        collected_at=collected_at,
        max_levels=max_levels,
    )

    reported = snapshot.order_count(side)
    on_curve = sum(o.quantity for o in orders)
    if reported is not None and reported > 0 and reported != on_curve:
        orders.append(
            OrderRecord(
                item_id=item_id,
                side=side,
                price=Decimal("0"),
                quantity=reported,
                collected_at=collected_at,
            )
        )

    return orders
