"""Tests for histogram normalization."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal

from market_depth.models import Side
from market_depth.normalizer import (
    MAX_QUANTITY,
    HistogramSnapshot,
    levels_to_orders,
    normalize_snapshot,
    parse_histogram,
    parse_order_count,
)

NOW = datetime(2024, 3, 1, 12, 30, 0, tzinfo=UTC)


def _normalize(payload, side: Side = Side.BUY, **kwargs):
    return normalize_snapshot(payload, item_id=7, side=side, collected_at=NOW, **kwargs)


class TestCumulativeToDelta:
    def test_cumulative_curve_becomes_per_level_quantities(self):
        payload = {"buy_order_graph": [[10, 5, "x"], [9, 12, "x"], [8, 12, "x"], [7, 20, "x"]]}

        orders = _normalize(payload)

        assert [(o.price, o.quantity) for o in orders] == [
            (Decimal("10"), 5),
            (Decimal("9"), 7),
            (Decimal("7"), 8),
        ]
        assert all(o.side is Side.BUY for o in orders)
        assert all(o.item_id == 7 for o in orders)
        assert all(o.collected_at == NOW for o in orders)

    def test_decreasing_cumulative_is_dropped(self):
        """A level whose cumulative value goes down never yields a negative quantity."""
        orders = levels_to_orders(
            [(Decimal("5"), 10), (Decimal("4"), 3), (Decimal("3"), 8)],
            item_id=1,
            side=Side.SELL,
            collected_at=NOW,
        )

        assert [(o.price, o.quantity) for o in orders] == [(Decimal("5"), 10), (Decimal("3"), 5)]

    def test_fractional_prices_keep_decimal_precision(self):
        orders = _normalize({"sell_order_graph": [[0.1, 3], [0.2, 4]]}, side=Side.SELL)

        assert [o.price for o in orders] == [Decimal("0.1"), Decimal("0.2")]

    def test_max_levels_caps_records(self):
        graph = [[100 - i, i + 1] for i in range(30)]

        orders = _normalize({"buy_order_graph": graph}, max_levels=15)

        assert len(orders) == 15
        assert orders[-1].price == Decimal("86")


class TestMissingOrMalformed:
    def test_missing_side_key_returns_empty(self):
        assert _normalize({"sell_order_graph": [[1, 2]]}) == []

    def test_empty_graph_returns_empty(self):
        assert _normalize({"buy_order_graph": []}) == []

    def test_non_object_payload_returns_empty(self):
        assert _normalize(["not", "an", "object"]) == []
        assert _normalize(None) == []

    def test_graph_not_a_list_returns_empty(self):
        assert _normalize({"buy_order_graph": "oops"}) == []

    def test_short_and_non_numeric_entries_are_skipped(self):
        payload = {"buy_order_graph": [[10], ["abc", 3], [9, 4], [True, 5], [8, 6]]}

        orders = _normalize(payload)

        assert [(o.price, o.quantity) for o in orders] == [(Decimal("9"), 4), (Decimal("8"), 2)]

    def test_infinite_cumulative_is_skipped(self):
        payload = json.loads('{"buy_order_graph": [[10.0, 5], [9.0, 1e400], [8.0, 9]]}')

        orders = _normalize(payload)

        assert [(o.price, o.quantity) for o in orders] == [(Decimal("10.0"), 5), (Decimal("8.0"), 4)]

    def test_cumulative_beyond_integer_range_is_skipped(self):
        payload = {"sell_order_graph": [[1, 2], [2, 10**20], [3, 6]]}

        orders = _normalize(payload, side=Side.SELL)

        assert [(o.price, o.quantity) for o in orders] == [(Decimal("1"), 2), (Decimal("3"), 4)]


class TestAggregateRecord:
    def test_diverging_reported_count_adds_zero_price_record(self):
        payload = {"buy_order_graph": [[10, 5], [9, 12]], "buy_order_count": "1,234"}

        orders = _normalize(payload)

        assert len(orders) == 3
        aggregate = orders[-1]
        assert aggregate.price == Decimal("0")
        assert aggregate.quantity == 1234
        assert aggregate.side is Side.BUY
        assert aggregate.is_aggregate
        assert not any(o.is_aggregate for o in orders[:-1])

    def test_matching_reported_count_adds_nothing(self):
        payload = {"buy_order_graph": [[10, 5], [9, 12]], "buy_order_count": "12"}

        orders = _normalize(payload)

        assert len(orders) == 2

    def test_count_for_other_side_is_ignored(self):
        payload = {"buy_order_graph": [[10, 5]], "sell_order_count": "99"}

        orders = _normalize(payload, side=Side.BUY)

        assert len(orders) == 1

    def test_count_without_levels_still_reported(self):
        orders = _normalize({"sell_order_count": 40}, side=Side.SELL)

        assert len(orders) == 1
        assert orders[0].price == Decimal("0")
        assert orders[0].quantity == 40
        assert orders[0].side is Side.SELL

    def test_zero_or_unparseable_count_adds_nothing(self):
        assert _normalize({"buy_order_count": "0"}) == []
        assert _normalize({"buy_order_count": "n/a"}) == []

    def test_out_of_range_count_adds_nothing(self):
        payload = {"buy_order_graph": [[10, 5]], "buy_order_count": "99999999999999999999999"}

        orders = _normalize(payload)

        assert [(o.price, o.quantity) for o in orders] == [(Decimal("10"), 5)]


class TestParseHelpers:
    def test_parse_order_count_variants(self):
        assert parse_order_count("1,234") == 1234
        assert parse_order_count("1 234 567") == 1234567
        assert parse_order_count(17) == 17
        assert parse_order_count("") is None
        assert parse_order_count(None) is None
        assert parse_order_count(True) is None

    def test_parse_order_count_floats(self):
        assert parse_order_count(1234.0) == 1234
        assert parse_order_count(12.5) is None
        assert parse_order_count(float("inf")) is None
        assert parse_order_count(float("nan")) is None

    def test_parse_order_count_rejects_values_sqlite_cannot_hold(self):
        assert parse_order_count(MAX_QUANTITY) == MAX_QUANTITY
        assert parse_order_count(MAX_QUANTITY + 1) is None
        assert parse_order_count(str(MAX_QUANTITY + 1)) is None
        assert parse_order_count("9" * 5000) is None

    def test_parse_histogram_reads_both_sides(self):
        snapshot = parse_histogram(
            {
                "buy_order_graph": [[2, 1]],
                "sell_order_graph": [[3, 4], [4, 6]],
                "buy_order_count": "1",
                "sell_order_count": "6",
            }
        )

        assert snapshot.levels(Side.BUY) == [(Decimal("2"), 1)]
        assert snapshot.levels(Side.SELL) == [(Decimal("3"), 4), (Decimal("4"), 6)]
        assert snapshot.order_count(Side.BUY) == 1
        assert snapshot.order_count(Side.SELL) == 6

    def test_empty_snapshot_defaults(self):
        snapshot = HistogramSnapshot()

        assert snapshot.levels(Side.BUY) == []
        assert snapshot.order_count(Side.SELL) is None
