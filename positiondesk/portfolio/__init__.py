from positiondesk.portfolio.pnl import PnLResult, PnLSummary, calculate_pnl, summarize
from positiondesk.portfolio.order_adjustment import OrderAdjustmentEngine

__all__ = [
    "PnLResult",
    "PnLSummary",
    "calculate_pnl",
    "summarize",
    "OrderAdjustmentEngine",
]
