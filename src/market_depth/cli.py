from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path

from .analytics import AnalyticsService
from .config import MarketDepthConfig, load_config
from .models import Side
from .scheduler import make_collection_job, run_scheduler
from .store import OrderStore, init_order_store

logger = logging.getLogger(__name__)


def _print(obj: object) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _config(args: argparse.Namespace) -> MarketDepthConfig:
    config = args.config
    if args.db_path:
        config = replace(config, db_path=Path(args.db_path))
    config.validate_or_raise()
    return config


def _store(config: MarketDepthConfig) -> OrderStore:
    return init_order_store(config.db_path, retention_days=config.retention_days)


def _side(args: argparse.Namespace) -> Side | None:
    return Side.parse(getattr(args, "side", None))


def cmd_init_db(args: argparse.Namespace) -> None:
    config = _config(args)
    with _store(config):
        pass
    _print({"db_path": str(config.db_path), "initialized": True})


def cmd_add_item(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        _print(AnalyticsService(store).add_item(args.name, args.external_id))


def cmd_items(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        items = AnalyticsService(store).get_items()
    _print({"count": len(items), "items": items})


def cmd_summary(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        _print(AnalyticsService(store).get_summary())


def cmd_orders(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        orders = AnalyticsService(store).get_item_orders(args.item_id, _side(args), args.limit)
    _print({"count": len(orders), "orders": orders})


def cmd_analytics(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        result = AnalyticsService(store).get_item_analytics(args.item_id)
    if result is None:
        _print({"error": "Item not found", "item_id": args.item_id})
        raise SystemExit(1)
    _print(result)


def cmd_time_series(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        result = AnalyticsService(store).get_item_time_series(
            args.item_id, _side(args), args.granularity, args.days
        )
    if result is None:
        _print({"error": "Item not found", "item_id": args.item_id})
        raise SystemExit(1)
    _print(result)


def cmd_price_history(args: argparse.Namespace) -> None:
    with _store(_config(args)) as store:
        _print(AnalyticsService(store).get_item_price_history(args.item_id, _side(args), args.days))


def cmd_collect(args: argparse.Namespace) -> None:
    config = _config(args)
    timeout = args.timeout_seconds or config.manual_run_timeout_seconds

    async def _run(store: OrderStore) -> dict:
        job = make_collection_job(config, store)
        async with asyncio.timeout(timeout):
            report = await job()
        return report.to_dict()

    with _store(config) as store:
        try:
            _print(asyncio.run(_run(store)))
        except TimeoutError:
            logger.warning("Collection cancelled after %.0fs", timeout)
            raise SystemExit(1) from None


def cmd_run(args: argparse.Namespace) -> None:
    config = _config(args)
    if args.every_seconds is not None:
        config = replace(config, collect_interval_seconds=float(args.every_seconds))
        config.validate_or_raise()

    with _store(config) as store:
        try:
            run_scheduler(config, store)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")


def main() -> None:
    p = argparse.ArgumentParser(prog="market-depth")
    p.add_argument("--db-path", type=str, default=None, help="Database file path")
    p.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (default: MARKET_DEPTH_LOG_LEVEL or INFO)",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("init-db", help="Create the database schema")
    pi.set_defaults(func=cmd_init_db)

    pa = sub.add_parser("add-item", help="Track an item (updates the name if already tracked)")
    pa.add_argument("name")
    pa.add_argument("external_id", help="Market item_nameid")
    pa.set_defaults(func=cmd_add_item)

    pl = sub.add_parser("items", help="List tracked items")
    pl.set_defaults(func=cmd_items)

    ps = sub.add_parser("summary", help="Item and order counts")
    ps.set_defaults(func=cmd_summary)

    po = sub.add_parser("orders", help="Latest stored orders for an item")
    po.add_argument("item_id", type=int)
    po.add_argument("--side", choices=["buy", "sell"], default=None)
    po.add_argument("--limit", type=int, default=100)
    po.set_defaults(func=cmd_orders)

    pan = sub.add_parser("analytics", help="Per-side statistics for an item")
    pan.add_argument("item_id", type=int)
    pan.set_defaults(func=cmd_analytics)

    pts = sub.add_parser("time-series", help="Hourly or daily aggregates for an item")
    pts.add_argument("item_id", type=int)
    pts.add_argument("--side", choices=["buy", "sell"], default=None)
    pts.add_argument("--granularity", choices=["hour", "day"], default="hour")
    pts.add_argument("--days", type=int, default=7, help="Lookback in days (default: 7)")
    pts.set_defaults(func=cmd_time_series)

    ph = sub.add_parser("price-history", help="Raw price points for an item")
    ph.add_argument("item_id", type=int)
    ph.add_argument("--side", choices=["buy", "sell"], default=None)
    ph.add_argument("--days", type=int, default=7, help="Lookback in days (default: 7)")
    ph.set_defaults(func=cmd_price_history)

    pc = sub.add_parser("collect", help="Run one collection pass and print the report")
    pc.add_argument(
        "--timeout-seconds",
        type=float,
        default=None,
        help="Cancel the run after this many seconds (default: MARKET_DEPTH_MANUAL_RUN_TIMEOUT_SECONDS)",
    )
    pc.set_defaults(func=cmd_collect)

    pr = sub.add_parser("run", help="Collect immediately, then on a fixed period forever")
    pr.add_argument(
        "--every-seconds",
        type=float,
        default=None,
        help="Period between runs (default: MARKET_DEPTH_COLLECT_INTERVAL_SECONDS)",
    )
    pr.set_defaults(func=cmd_run)

    args = p.parse_args()

    args.config = load_config()
    level_name = (args.log_level or args.config.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args.func(args)


if __name__ == "__main__":
    main()
