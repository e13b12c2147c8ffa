"""PositionDesk — live position monitoring and order adjustment.

Merges a streaming tick feed with REST baselines into display rows,
recomputes brokerage-aware P&L every cycle, and validates position
mutations (add lots, protective levels, exit, hold) before handing
them to the external order service.
"""

__version__ = "0.1.0"
