"""PositionDesk CLI.

Usage:
    python -m positiondesk pnl --side BUY --avg 100 --ltp 110 --qty 50
    python -m positiondesk open-orders          Open orders with live P&L
    python -m positiondesk funds --product MIS  Available limit for a product

``open-orders`` and ``funds`` read the session from POSITIONDESK_BROKER_ID,
POSITIONDESK_CUSTOMER_ID, POSITIONDESK_TOKEN and POSITIONDESK_ROLE.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog

from positiondesk.config.settings import DeskSettings, get_settings
from positiondesk.config.view_profiles import ORDER_LIST
from positiondesk.exceptions import PositionDeskError
from positiondesk.factory import load_profiles
from positiondesk.infra.desk_client import DeskClient
from positiondesk.market.merger import SnapshotMerger
from positiondesk.portfolio.order_adjustment import spendable_limit
from positiondesk.portfolio.pnl import calculate_pnl, summarize
from positiondesk.schemas.enums import BrokerageMode, OrderSide, ProductType
from positiondesk.session import SessionContext
from positiondesk.utils.logging import configure_logging

logger = structlog.get_logger()


def _parse_args(settings: DeskSettings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="positiondesk",
        description="PositionDesk — live positions, P&L and order adjustment",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.log_level,
        help="Logging level",
    )
    parser.add_argument(
        "--console-logs",
        action="store_true",
        help="Human-readable logs instead of JSON",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # pnl
    pnl = subparsers.add_parser("pnl", help="P&L for one position")
    pnl.add_argument("--side", required=True, type=str.upper, choices=["BUY", "SELL"])
    pnl.add_argument("--avg", required=True, help="Average entry price")
    pnl.add_argument("--ltp", required=True, help="Current price")
    pnl.add_argument("--qty", required=True, type=int, help="Quantity in units")
    pnl.add_argument(
        "--brokerage",
        default=str(settings.brokerage_percent),
        help=f"Brokerage percent per side (default: {settings.brokerage_percent})",
    )
    pnl.add_argument(
        "--mode",
        choices=[m.value for m in BrokerageMode],
        default=BrokerageMode.ENTRY_ONLY.value,
    )

    # open-orders
    open_orders = subparsers.add_parser("open-orders", help="Open orders with P&L")
    open_orders.add_argument(
        "--product",
        default=ProductType.INTRADAY.value,
        help="MIS/INTRADAY or NRML/OVERNIGHT (default: MIS)",
    )

    # funds
    funds = subparsers.add_parser("funds", help="Available limit for a product")
    funds.add_argument("--product", default=ProductType.INTRADAY.value)

    return parser.parse_args()


def _cmd_pnl(args: argparse.Namespace) -> int:
    result = calculate_pnl(
        OrderSide(args.side),
        args.avg,
        args.ltp,
        args.qty,
        args.brokerage,
        args.mode,
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _client(settings: DeskSettings) -> DeskClient:
    session = SessionContext.from_env()
    session.require()
    return DeskClient(session, base_url=settings.api_url, timeout=settings.request_timeout)


async def _cmd_open_orders(args: argparse.Namespace, settings: DeskSettings) -> int:
    """Fetch open orders and their baseline once; print merged rows."""
    merger = SnapshotMerger()
    profile = load_profiles(settings).get(ORDER_LIST)
    async with _client(settings) as client:
        orders = await client.list_orders(product=ProductType.parse(args.product))
        snapshots = await client.fetch_snapshot(o.instrument_token for o in orders)

    results = []
    print(f"\n{'Symbol':<28} {'Side':<5} {'Qty':>7} {'Avg':>12} {'LTP':>12} {'Net P&L':>14}")
    print("-" * 84)
    for order in orders:
        snapshot = snapshots.get(order.instrument_token)
        row = merger.build_row(
            order.instrument(),
            snapshot.to_fields() if snapshot is not None else None,
            None,
        )
        pnl = calculate_pnl(
            order.side,
            order.avg_price,
            row.price,
            order.quantity,
            settings.brokerage_percent,
            profile.brokerage_mode,
        )
        results.append(pnl)
        print(
            f"{order.symbol:<28} {order.side.value:<5} {order.quantity:>7} "
            f"{order.avg_price:>12} {row.price:>12} {pnl.net_pnl:>14.2f}"
        )

    summary = summarize(results)
    print(
        f"\n{summary.positions} positions, net {summary.net_pnl:.2f} "
        f"(gross {summary.gross_pnl:.2f}, brokerage {summary.total_brokerage:.2f}, "
        f"{summary.pct:.2f}%)"
    )
    return 0


async def _cmd_funds(args: argparse.Namespace, settings: DeskSettings) -> int:
    product = ProductType.parse(args.product)
    async with _client(settings) as client:
        limits = await client.query_funds(product)
    print(
        json.dumps(
            {
                "product": product.value,
                "available_limit": str(limits.available_limit),
                "used_limit": str(limits.used_limit),
                "spendable": str(spendable_limit(product, limits)),
            },
            indent=2,
        )
    )
    return 0


def main() -> int:
    settings = get_settings()
    args = _parse_args(settings)
    configure_logging(json_output=settings.json_logs and not args.console_logs, level=args.log_level)

    try:
        if args.command == "pnl":
            return _cmd_pnl(args)
        elif args.command == "open-orders":
            return asyncio.run(_cmd_open_orders(args, settings))
        elif args.command == "funds":
            return asyncio.run(_cmd_funds(args, settings))
        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            return 1
    except PositionDeskError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
