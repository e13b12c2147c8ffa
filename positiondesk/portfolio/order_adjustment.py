"""Order adjustment — validates and submits position mutations.

Transitions (the order service owns the state; we only request):
    OPEN -> OPEN     adjust: add lots, set stop-loss / target
    OPEN -> HOLD     hold
    OPEN -> CLOSED   exit (jobbing-adjusted close price)
    HOLD -> CLOSED   exit

Rules shared by every action:
- at most one mutation in flight per order; a second request while one
  is pending is rejected before any outbound call;
- validation and funds failures never reach the order service;
- a failure changes nothing locally and always clears the in-flight
  mark, so the user can retry;
- every success broadcasts ``order-changed`` with the updated order.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Protocol

import structlog

from positiondesk.exceptions import (
    ConcurrentSubmissionError,
    InsufficientFundsError,
    InvalidTransitionError,
    PermissionDeniedError,
    PositionDeskError,
    ServiceError,
    ValidationError,
)
from positiondesk.schemas.enums import OrderAction, OrderSide, OrderStatus, ProductType
from positiondesk.schemas.market import to_decimal
from positiondesk.schemas.orders import Order, OrderMutationRequest, ProductLimits
from positiondesk.services.event_bus import ORDER_CHANGED, EventPublisher
from positiondesk.session import SessionContext, SessionInfo

logger = structlog.get_logger()

ZERO = Decimal("0")
PRICE_STEP = Decimal("0.01")
CLOSE_PRICE_STEP = Decimal("0.0001")

ALLOWED_SOURCES = {
    OrderAction.ADJUST: {OrderStatus.OPEN},
    OrderAction.HOLD: {OrderStatus.OPEN},
    OrderAction.EXIT: {OrderStatus.OPEN, OrderStatus.HOLD},
}


class FundsService(Protocol):
    async def query_funds(self, product: ProductType) -> ProductLimits: ...


class OrderService(Protocol):
    async def submit_mutation(self, request: OrderMutationRequest) -> Optional[Order]: ...

    async def exit_all(
        self,
        broker_id: str,
        customer_id: str,
        closed_ltp_map: Mapping[str, Decimal],
        closed_at: datetime,
    ) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def parse_price(value: Any, field: str = "price", *, required: bool = False) -> Decimal:
    """User-entered price → Decimal. Blank means 0 unless required."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}")
    price = to_decimal(value.strip() if isinstance(value, str) else value)
    if price is None or not price.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    if price < 0:
        raise ValidationError(f"Invalid {field}: must not be negative")
    return price


def validate_protective_levels(
    side: OrderSide,
    current_price: Decimal,
    stop_loss: Decimal,
    target: Decimal,
) -> None:
    """Side-dependent ordering of stop-loss and target against CMP.

    Zero means "not set" and is never checked. Skipped entirely when
    the current price is unknown (<= 0).
    """
    if current_price <= 0:
        return

    if side == OrderSide.BUY:
        if stop_loss > 0 and stop_loss >= current_price:
            raise ValidationError(
                f"Invalid SL: for BUY, SL must be lower than CMP ({current_price})"
            )
        if target > 0 and target <= current_price:
            raise ValidationError(
                f"Invalid Target: for BUY, Target must be higher than CMP ({current_price})"
            )
    else:
        if stop_loss > 0 and stop_loss <= current_price:
            raise ValidationError(
                f"Invalid SL: for SELL, SL must be higher than CMP ({current_price})"
            )
        if target > 0 and target >= current_price:
            raise ValidationError(
                f"Invalid Target: for SELL, Target must be lower than CMP ({current_price})"
            )


def spendable_limit(product: ProductType, limits: ProductLimits) -> Decimal:
    """Intraday spends what is left of the limit; overnight the limit itself."""
    if product == ProductType.INTRADAY:
        return limits.available_limit - limits.used_limit
    return limits.available_limit


def weighted_average_price(
    existing_qty: int,
    existing_avg: Decimal,
    added_qty: int,
    added_price: Decimal,
) -> Decimal:
    total = existing_qty + added_qty
    if total == 0:
        return ZERO
    value = Decimal(existing_qty) * existing_avg + Decimal(added_qty) * added_price
    return (value / Decimal(total)).quantize(PRICE_STEP, rounding=ROUND_HALF_UP)


def _came_from(to_status: OrderStatus) -> str:
    """``came_From`` wire value: which window the request was raised from."""
    return "Hold" if to_status == OrderStatus.HOLD else "Open"


def jobbing_close_price(
    side: OrderSide,
    live_price: Decimal,
    jobbing_percent: Decimal,
) -> Decimal:
    """Close price with the configured slippage applied against the trader."""
    closed = live_price
    if live_price > 0 and jobbing_percent:
        slippage = live_price * jobbing_percent / Decimal("100")
        closed = live_price - slippage if side == OrderSide.BUY else live_price + slippage
    return closed.quantize(CLOSE_PRICE_STEP, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class OrderAdjustmentEngine:
    """Validates user actions on orders and submits them.

    Args:
        funds: Funds service (available/used limits per product).
        orders: Order-mutation service.
        events: Domain event publisher.
        session: Active session; read at call time.
        clock: Current UTC time, injectable for tests.
    """

    def __init__(
        self,
        funds: FundsService,
        orders: OrderService,
        events: EventPublisher,
        session: SessionContext,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._funds = funds
        self._orders = orders
        self._events = events
        self._session = session
        self._clock = clock
        self._in_flight: set[str] = set()

    def is_pending(self, order_id: str) -> bool:
        return order_id in self._in_flight

    @property
    def pending_orders(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    @contextmanager
    def _in_flight_guard(self, order_ids: Iterable[str]) -> Iterator[None]:
        ids = list(order_ids)
        busy = [oid for oid in ids if oid in self._in_flight]
        if busy:
            raise ConcurrentSubmissionError(
                f"A change is already pending for order {busy[0]}",
                order_id=busy[0],
            )
        self._in_flight.update(ids)
        try:
            yield
        finally:
            self._in_flight.difference_update(ids)

    # -- actions ------------------------------------------------------------

    async def adjust(
        self,
        order: Order,
        current_price: Any,
        *,
        add_lots: int = 0,
        stop_loss: Any = None,
        target: Any = None,
    ) -> Optional[Order]:
        """Keep the order OPEN while adding lots and/or setting SL/target.

        Args:
            order: Order as last reported by the service.
            current_price: CMP used for validation and the new average.
            add_lots: Extra lots to buy/sell at CMP.
            stop_loss: New stop-loss; None keeps the order's current one.
            target: New target; None keeps the order's current one.

        Raises:
            ConcurrentSubmissionError: a change is pending for this order.
            InvalidTransitionError: order is not OPEN.
            ValidationError: bad SL/target/lots input.
            InsufficientFundsError: added lots exceed the product limit.
            ServiceError: funds or order service failure.
        """
        with self._in_flight_guard([order.order_id]):
            session = self._session.require()
            self._check_transition(order, OrderAction.ADJUST, OrderStatus.OPEN)

            price = to_decimal(current_price) or ZERO
            sl = order.stop_loss if stop_loss is None else parse_price(stop_loss, "stop_loss")
            tgt = order.target if target is None else parse_price(target, "target")
            lots_to_add = self._parse_lots(add_lots)

            validate_protective_levels(order.side, price, sl, tgt)

            new_lots = order.lots
            new_quantity = order.quantity
            new_avg = order.avg_price
            if lots_to_add > 0:
                if price <= 0:
                    raise ValidationError(
                        "Cannot add lots without a live price", order_id=order.order_id
                    )
                await self._check_funds(order, lots_to_add, price)

                if not order.is_consistent:
                    logger.warning(
                        "Order lots and quantity disagree",
                        order_id=order.order_id,
                        lots=order.lots,
                        lot_size=order.lot_size,
                        quantity=order.quantity,
                    )
                added_qty = lots_to_add * order.lot_size
                new_avg = weighted_average_price(order.quantity, order.avg_price, added_qty, price)
                new_lots = order.lots + lots_to_add
                new_quantity = order.quantity + added_qty

            request = OrderMutationRequest(
                broker_id_str=session.broker_id,
                customer_id_str=session.customer_id,
                order_id=order.order_id,
                order_status=OrderStatus.OPEN,
                instrument_token=order.instrument_token,
                symbol=order.symbol,
                side=order.side,
                product=order.product,
                lots=new_lots,
                quantity=new_quantity,
                price=new_avg,
                stop_loss=sl,
                target=tgt,
                margin_blocked=order.margin_blocked,
                came_from=_came_from(OrderStatus.OPEN),
                meta={"from": "positiondesk_adjust", "added_lots": lots_to_add},
            )
            return await self._submit(OrderAction.ADJUST, request)

    async def exit(self, order: Order, live_price: Any) -> Optional[Order]:
        """Close an OPEN or HOLD order at the jobbing-adjusted live price."""
        with self._in_flight_guard([order.order_id]):
            session = self._session.require()
            self._check_transition(order, OrderAction.EXIT, OrderStatus.CLOSED)

            # Without a live price the close goes out at 0 and the service
            # resolves it against its own quote.
            price = max(to_decimal(live_price) or ZERO, ZERO)
            closed_ltp = jobbing_close_price(order.side, price, order.jobbing_percent)

            request = OrderMutationRequest(
                broker_id_str=session.broker_id,
                customer_id_str=session.customer_id,
                order_id=order.order_id,
                order_status=OrderStatus.CLOSED,
                instrument_token=order.instrument_token,
                symbol=order.symbol,
                closed_ltp=closed_ltp,
                closed_at=self._clock(),
                came_from=_came_from(OrderStatus.CLOSED),
                meta={"from": "positiondesk_exit"},
            )
            return await self._submit(OrderAction.EXIT, request)

    async def hold(self, order: Order) -> Optional[Order]:
        """Move an OPEN order to HOLD without touching price or lots."""
        with self._in_flight_guard([order.order_id]):
            session = self._session.require()
            self._check_transition(order, OrderAction.HOLD, OrderStatus.HOLD)

            request = OrderMutationRequest(
                broker_id_str=session.broker_id,
                customer_id_str=session.customer_id,
                order_id=order.order_id,
                order_status=OrderStatus.HOLD,
                instrument_token=order.instrument_token,
                symbol=order.symbol,
                came_from=_came_from(OrderStatus.HOLD),
                meta={"from": "positiondesk_hold"},
            )
            return await self._submit(OrderAction.HOLD, request)

    async def edit_price(self, order: Order, price: Any) -> Optional[Order]:
        """Overwrite the recorded average price (broker role only).

        Bypasses the weighted-average logic entirely.
        """
        with self._in_flight_guard([order.order_id]):
            session = self._require_privileged()
            new_price = parse_price(price, "price", required=True)

            request = OrderMutationRequest(
                broker_id_str=session.broker_id,
                customer_id_str=session.customer_id,
                order_id=order.order_id,
                price=new_price,
                meta={"from": "positiondesk_edit_price"},
            )
            return await self._submit(OrderAction.EDIT_PRICE, request)

    async def exit_all(
        self,
        orders: Iterable[Order],
        prices: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Close every given open order in one request (broker role only).

        Args:
            orders: Orders to close.
            prices: ``order_id -> live price``; missing prices close at 0,
                which the service resolves against its own quote.
        """
        orders = list(orders)
        with self._in_flight_guard(o.order_id for o in orders):
            session = self._require_privileged()
            if not orders:
                raise ValidationError("No open orders to exit")

            closed_ltp_map = {
                o.order_id: to_decimal(prices.get(o.order_id)) or ZERO for o in orders
            }
            closed_at = self._clock()
            logger.info(
                "Submitting exit-all",
                order_count=len(orders),
                broker_id=session.broker_id,
                customer_id=session.customer_id,
            )
            try:
                result = await self._orders.exit_all(
                    session.broker_id, session.customer_id, closed_ltp_map, closed_at
                )
            except PositionDeskError as e:
                logger.error("Exit-all failed", order_count=len(orders), error=str(e))
                raise

            logger.info("Exit-all accepted", order_count=len(orders))
            await self._events.broadcast(ORDER_CHANGED, None)
            return result

    # -- helpers ------------------------------------------------------------

    def _check_transition(self, order: Order, action: OrderAction, to_status: OrderStatus) -> None:
        if order.status not in ALLOWED_SOURCES[action]:
            raise InvalidTransitionError(
                f"Cannot {action.value.lower()} an order in status {order.status.value}",
                order_id=order.order_id,
                from_status=order.status.value,
                to_status=to_status.value,
            )

    def _require_privileged(self) -> SessionInfo:
        session = self._session.require()
        if not session.is_privileged:
            raise PermissionDeniedError("Only the broker role may perform this action")
        return session

    @staticmethod
    def _parse_lots(add_lots: Any) -> int:
        if add_lots is None or (isinstance(add_lots, str) and not add_lots.strip()):
            return 0
        try:
            lots = int(str(add_lots).strip())
        except ValueError:
            raise ValidationError(f"Invalid lots: {add_lots!r}") from None
        if lots < 0:
            raise ValidationError("Invalid lots: must not be negative")
        return lots

    async def _check_funds(self, order: Order, add_lots: int, price: Decimal) -> None:
        try:
            limits = await self._funds.query_funds(order.product)
        except PositionDeskError:
            raise
        except Exception as e:
            raise ServiceError(
                "Fund check failed. Try again.", order_id=order.order_id, service="funds"
            ) from e

        available = spendable_limit(order.product, limits)
        required = Decimal(add_lots * order.lot_size) * price
        if required > available:
            logger.info(
                "Insufficient funds for added lots",
                order_id=order.order_id,
                required=str(required),
                available=str(available),
            )
            raise InsufficientFundsError(
                f"Insufficient Funds! Required: {required:.2f}, Available: {available:.2f}",
                order_id=order.order_id,
                required=required,
                available=available,
            )

    async def _submit(self, action: OrderAction, request: OrderMutationRequest) -> Optional[Order]:
        logger.info(
            "Submitting order mutation",
            action=action.value,
            order_id=request.order_id,
            order_status=request.order_status.value if request.order_status else None,
        )
        try:
            updated = await self._orders.submit_mutation(request)
        except PositionDeskError as e:
            logger.error(
                "Order mutation failed",
                action=action.value,
                order_id=request.order_id,
                error=str(e),
            )
            raise

        logger.info("Order mutation accepted", action=action.value, order_id=request.order_id)
        await self._events.broadcast(ORDER_CHANGED, updated)
        return updated
