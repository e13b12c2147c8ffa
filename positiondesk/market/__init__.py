"""Live market data: tick storage, subscriptions, merging and sampling.

Ticks flow transport → TickStore → ReconciliationLoop → SnapshotMerger
→ display rows, with the SubscriptionManager keeping the transport's
subscription set equal to what the view displays.
"""
from .tick_store import TickStore
from .subscriptions import MarketDataTransport, SubscriptionManager
from .merger import SnapshotMerger, accepts_tick
from .sampler import PeriodicSampler, ltp_changed, tick_changed, value_changed
from .reconciliation import ReconciliationLoop

__all__ = [
    "TickStore",
    "MarketDataTransport",
    "SubscriptionManager",
    "SnapshotMerger",
    "accepts_tick",
    "PeriodicSampler",
    "ltp_changed",
    "tick_changed",
    "value_changed",
    "ReconciliationLoop",
]
