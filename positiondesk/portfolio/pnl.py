"""P&L and brokerage for a single position.

Pure functions, no I/O. Recomputed for every row on every published
cycle, so a missing price (common before the first tick) yields a zero
result rather than an error.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from positiondesk.schemas.enums import BrokerageMode, OrderSide
from positiondesk.schemas.market import to_decimal

ZERO = Decimal("0")
DEFAULT_BROKERAGE_PERCENT = Decimal("0.01")


@dataclass(frozen=True)
class PnLResult:
    """Derived P&L view for one position. Never stored."""
    gross_pnl: Decimal
    total_brokerage: Decimal
    net_pnl: Decimal
    entry_value: Decimal
    exit_value: Decimal
    pct: float

    @property
    def is_profitable(self) -> bool:
        return self.net_pnl > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "gross_pnl": str(self.gross_pnl),
            "total_brokerage": str(self.total_brokerage),
            "net_pnl": str(self.net_pnl),
            "entry_value": str(self.entry_value),
            "exit_value": str(self.exit_value),
            "pct": self.pct,
        }


def calculate_pnl(
    side: OrderSide | str,
    avg_price: Decimal | float | str,
    current_price: Decimal | float | str | None,
    quantity: int | Decimal,
    brokerage_percent_per_side: Decimal | float | str = DEFAULT_BROKERAGE_PERCENT,
    mode: BrokerageMode | str = BrokerageMode.ENTRY_ONLY,
) -> PnLResult:
    """Gross/net P&L and brokerage for one position.

    Args:
        side: BUY or SELL.
        avg_price: Average entry price.
        current_price: Live price (LTP). None or <= 0 means unknown.
        quantity: Position size in units (lots * lot_size).
        brokerage_percent_per_side: Brokerage in percent, e.g. 0.01 for 0.01%.
        mode: ``entry-only`` charges the entry leg, ``round-trip`` both legs.

    Returns:
        PnLResult. With an unknown price or zero quantity every P&L
        figure is zero; entry_value is still reported.
    """
    side = OrderSide(str(side.value if isinstance(side, OrderSide) else side).upper())
    mode = BrokerageMode(mode)
    avg = to_decimal(avg_price) or ZERO
    price = to_decimal(current_price) or ZERO
    qty = Decimal(str(quantity))
    rate = (to_decimal(brokerage_percent_per_side) or ZERO) / Decimal("100")

    entry_value = avg * qty
    if price <= 0 or qty == 0:
        return PnLResult(
            gross_pnl=ZERO,
            total_brokerage=ZERO,
            net_pnl=ZERO,
            entry_value=entry_value,
            exit_value=ZERO,
            pct=0.0,
        )

    exit_value = price * qty
    if side == OrderSide.BUY:
        gross = exit_value - entry_value
    else:
        gross = entry_value - exit_value

    if mode == BrokerageMode.ENTRY_ONLY:
        brokerage = rate * entry_value
    else:
        brokerage = rate * (entry_value + exit_value)

    pct = 0.0 if entry_value == 0 else float(gross / entry_value * 100)

    return PnLResult(
        gross_pnl=gross,
        total_brokerage=brokerage,
        net_pnl=gross - brokerage,
        entry_value=entry_value,
        exit_value=exit_value,
        pct=pct,
    )


@dataclass(frozen=True)
class PnLSummary:
    """Totals across a view's rows (order-list header)."""
    positions: int
    gross_pnl: Decimal
    total_brokerage: Decimal
    net_pnl: Decimal
    entry_value: Decimal

    @property
    def pct(self) -> float:
        if self.entry_value == 0:
            return 0.0
        return float(self.gross_pnl / self.entry_value * 100)


def summarize(results: Iterable[PnLResult]) -> PnLSummary:
    positions = 0
    gross = brokerage = net = entry = ZERO
    for result in results:
        positions += 1
        gross += result.gross_pnl
        brokerage += result.total_brokerage
        net += result.net_pnl
        entry += result.entry_value
    return PnLSummary(
        positions=positions,
        gross_pnl=gross,
        total_brokerage=brokerage,
        net_pnl=net,
        entry_value=entry,
    )
