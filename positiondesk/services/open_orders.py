"""Open-orders view — live rows with brokerage-aware P&L.

Lifecycle:
1. activate(): fetch open orders, subscribe their tokens, fetch the
   baseline snapshot once, bind rows and start the loop at the
   profile's throttle
2. each loop cycle: rows whose tick changed are rebuilt with fresh P&L
3. ``order-changed`` on the event bus: refresh from step 1
4. teardown(): stop the loop and release subscriptions

Every await in a refresh is followed by a generation check, so a
result arriving after teardown (or after a newer refresh started) is
dropped instead of applied.
"""
from __future__ import annotations

import inspect
import time
from dataclasses import replace
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import structlog

from positiondesk.config.view_profiles import DEFAULT_PROFILES, ORDER_LIST, ViewProfile
from positiondesk.exceptions import PositionDeskError
from positiondesk.market.reconciliation import ReconciliationLoop
from positiondesk.market.subscriptions import MarketDataTransport, SubscriptionManager
from positiondesk.market.tick_store import TickStore
from positiondesk.portfolio.pnl import DEFAULT_BROKERAGE_PERCENT, PnLSummary, calculate_pnl, summarize
from positiondesk.schemas.enums import OrderStatus, ProductType
from positiondesk.schemas.market import DisplayRow, Snapshot
from positiondesk.schemas.orders import Order
from positiondesk.services.event_bus import ORDER_CHANGED, EventBus

logger = structlog.get_logger()

RowsCallback = Callable[[list[DisplayRow]], Union[None, Awaitable[None]]]


class OrderSource(Protocol):
    async def list_orders(
        self,
        status: OrderStatus = OrderStatus.OPEN,
        product: ProductType | None = ProductType.INTRADAY,
    ) -> list[Order]: ...


class SnapshotSource(Protocol):
    async def fetch_snapshot(self, tokens: Any) -> dict[str, Snapshot]: ...


class OpenOrdersView:
    """Open positions of the session's customer, kept live."""

    def __init__(
        self,
        orders: OrderSource,
        snapshots: SnapshotSource,
        tick_store: TickStore,
        transport: MarketDataTransport,
        events: EventBus,
        on_rows: Optional[RowsCallback] = None,
        *,
        profile: ViewProfile = DEFAULT_PROFILES[ORDER_LIST],
        brokerage_percent: Decimal = DEFAULT_BROKERAGE_PERCENT,
        product: ProductType | None = ProductType.INTRADAY,
        frame_interval: float = 0.016,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._orders_source = orders
        self._snapshots = snapshots
        self._subscriptions = SubscriptionManager(
            transport, profile.subscription_mode, name="open_orders"
        )
        self._events = events
        self._on_rows = on_rows
        self._profile = profile
        self._brokerage_percent = brokerage_percent
        self._product = product

        self._orders: dict[str, Order] = {}
        self._generation = 0
        self._active = False
        self._closed = False
        self.error: Optional[str] = None

        self._loop = ReconciliationLoop(
            tick_store,
            self._deliver,
            interval=profile.throttle_interval,
            frame_interval=frame_interval,
            enrich=self._with_pnl,
            clock=clock,
            name="open_orders",
        )

    @property
    def loop(self) -> ReconciliationLoop:
        return self._loop

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def orders(self) -> list[Order]:
        return list(self._orders.values())

    @property
    def rows(self) -> list[DisplayRow]:
        return list(self._loop.rows.values())

    def row_for(self, order_id: str) -> Optional[DisplayRow]:
        return self._loop.rows.get(order_id)

    def summary(self) -> PnLSummary:
        return summarize(row.pnl for row in self.rows if row.pnl is not None)

    def closing_prices(self) -> dict[str, Decimal]:
        """``order_id -> display price`` for an exit-all request."""
        return {key: row.price for key, row in self._loop.rows.items()}

    async def activate(self) -> bool:
        """Load rows and start sampling. Returns False if loading failed."""
        if self._closed:
            raise RuntimeError("Open-orders view has been torn down")
        if not self._active:
            self._events.subscribe(ORDER_CHANGED, self._on_order_changed)
            self._active = True
        loaded = await self.refresh()
        if not self._closed:
            self._loop.start()
        return loaded

    async def refresh(self) -> bool:
        """Refetch orders and baseline, resubscribe, rebuild every row."""
        if self._closed:
            return False
        self._generation += 1
        generation = self._generation

        try:
            orders = await self._orders_source.list_orders(OrderStatus.OPEN, self._product)
        except PositionDeskError as e:
            if self._stale(generation):
                return False
            self.error = str(e)
            logger.error("Failed to load open orders", error=str(e))
            return False
        if self._stale(generation):
            return False

        tokens = [o.instrument_token for o in orders if o.instrument_token]
        await self._subscriptions.set_tokens(tokens)
        if self._stale(generation):
            return False

        baselines: dict[str, dict[str, Any]] = {}
        if tokens:
            try:
                snapshots = await self._snapshots.fetch_snapshot(tokens)
                baselines = {token: snap.to_fields() for token, snap in snapshots.items()}
            except PositionDeskError as e:
                logger.warning("Baseline snapshot unavailable", error=str(e), tokens=len(tokens))
        if self._stale(generation):
            return False

        self.error = None
        self._orders = {o.order_id: o for o in orders}
        rows = self._loop.bind(
            {o.order_id: o.instrument() for o in orders},
            baselines,
        )
        logger.info(
            "Open orders loaded",
            orders=len(orders),
            tokens=len(set(tokens)),
            degraded=self._subscriptions.degraded,
        )
        await self._deliver(rows)
        return True

    async def teardown(self) -> None:
        """Stop permanently; nothing is delivered after this returns."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        if self._active:
            self._events.unsubscribe(ORDER_CHANGED, self._on_order_changed)
            self._active = False
        await self._loop.stop()
        await self._subscriptions.close()
        logger.debug("Open-orders view torn down")

    def _stale(self, generation: int) -> bool:
        return self._closed or generation != self._generation

    def _with_pnl(self, key: str, row: DisplayRow) -> DisplayRow:
        order = self._orders.get(key)
        if order is None:
            return row
        pnl = calculate_pnl(
            order.side,
            order.avg_price,
            row.price,
            order.quantity,
            self._brokerage_percent,
            self._profile.brokerage_mode,
        )
        return replace(row, order=order, pnl=pnl)

    async def _on_order_changed(self, order: Optional[Order]) -> None:
        if self._closed:
            return
        logger.debug(
            "Order changed; refreshing",
            order_id=order.order_id if order is not None else None,
        )
        await self.refresh()

    async def _deliver(self, rows: list[DisplayRow]) -> None:
        if self._closed or self._on_rows is None:
            return
        result = self._on_rows(rows)
        if inspect.isawaitable(result):
            await result
