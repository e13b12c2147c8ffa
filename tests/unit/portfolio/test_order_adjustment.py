"""Tests for OrderAdjustmentEngine at positiondesk/portfolio/order_adjustment.py."""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from positiondesk.exceptions import (
    ConcurrentSubmissionError,
    InsufficientFundsError,
    InvalidTransitionError,
    PermissionDeniedError,
    ServiceError,
    SessionError,
    ValidationError,
)
from positiondesk.portfolio.order_adjustment import (
    OrderAdjustmentEngine,
    jobbing_close_price,
    parse_price,
    spendable_limit,
    validate_protective_levels,
    weighted_average_price,
)
from positiondesk.schemas.enums import OrderSide, OrderStatus, ProductType
from positiondesk.schemas.orders import ProductLimits
from positiondesk.services.event_bus import ORDER_CHANGED, EventBus
from positiondesk.session import SessionContext
from tests.fixtures.market_data import make_order

FIXED_NOW = datetime(2026, 3, 12, 10, 15, 0, tzinfo=timezone.utc)


def _limits(available="100000", used="40000") -> ProductLimits:
    return ProductLimits(available_limit=Decimal(available), used_limit=Decimal(used))


@pytest.fixture
def funds():
    service = AsyncMock()
    service.query_funds.return_value = _limits()
    return service


@pytest.fixture
def orders():
    service = AsyncMock()
    service.submit_mutation.return_value = None
    service.exit_all.return_value = {"success": True, "closed": 2}
    return service


@pytest.fixture
def events():
    return AsyncMock()


@pytest.fixture
def engine(funds, orders, events, session):
    return OrderAdjustmentEngine(funds, orders, events, session, clock=lambda: FIXED_NOW)


@pytest.fixture
def broker_engine(funds, orders, events, broker_session):
    return OrderAdjustmentEngine(funds, orders, events, broker_session, clock=lambda: FIXED_NOW)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------
class TestProtectiveLevels:
    """Stop-loss / target ordering against CMP."""

    def test_buy_valid_levels(self):
        validate_protective_levels(OrderSide.BUY, Decimal("100"), Decimal("95"), Decimal("110"))

    def test_buy_stop_loss_at_cmp_rejected(self):
        with pytest.raises(ValidationError, match="SL"):
            validate_protective_levels(OrderSide.BUY, Decimal("100"), Decimal("100"), Decimal("0"))

    def test_buy_target_at_cmp_rejected(self):
        with pytest.raises(ValidationError, match="Target"):
            validate_protective_levels(OrderSide.BUY, Decimal("100"), Decimal("0"), Decimal("100"))

    def test_sell_levels_are_inverted(self):
        validate_protective_levels(OrderSide.SELL, Decimal("100"), Decimal("105"), Decimal("90"))
        with pytest.raises(ValidationError):
            validate_protective_levels(OrderSide.SELL, Decimal("100"), Decimal("95"), Decimal("0"))
        with pytest.raises(ValidationError):
            validate_protective_levels(OrderSide.SELL, Decimal("100"), Decimal("0"), Decimal("110"))

    def test_zero_levels_are_unset(self):
        validate_protective_levels(OrderSide.BUY, Decimal("100"), Decimal("0"), Decimal("0"))

    def test_unknown_price_skips_checks(self):
        """With no CMP nothing can be checked, so anything passes."""
        validate_protective_levels(OrderSide.BUY, Decimal("0"), Decimal("500"), Decimal("1"))


class TestPriceRules:
    def test_weighted_average(self):
        """75 @ 100 plus 25 @ 120 averages 105.00."""
        assert weighted_average_price(75, Decimal("100"), 25, Decimal("120")) == Decimal("105.00")

    def test_weighted_average_rounds_half_up(self):
        assert weighted_average_price(2, Decimal("100"), 1, Decimal("100.01")) == Decimal("100.00")
        assert weighted_average_price(1, Decimal("100"), 1, Decimal("100.01")) == Decimal("100.01")

    def test_jobbing_buy_closes_lower(self):
        assert jobbing_close_price(OrderSide.BUY, Decimal("200"), Decimal("0.5")) == Decimal("199.0000")

    def test_jobbing_sell_closes_higher(self):
        assert jobbing_close_price(OrderSide.SELL, Decimal("200"), Decimal("0.5")) == Decimal("201.0000")

    def test_jobbing_rounds_to_four_places(self):
        assert jobbing_close_price(OrderSide.BUY, Decimal("123.45"), Decimal("0.33")) == Decimal("123.0426")

    def test_no_jobbing_keeps_price(self):
        assert jobbing_close_price(OrderSide.BUY, Decimal("123.45"), Decimal("0")) == Decimal("123.4500")

    def test_spendable_intraday_subtracts_used(self):
        assert spendable_limit(ProductType.INTRADAY, _limits()) == Decimal("60000")

    def test_spendable_overnight_is_available(self):
        assert spendable_limit(ProductType.OVERNIGHT, _limits()) == Decimal("100000")

    @pytest.mark.parametrize("value", ["abc", "-5", True, "NaN"])
    def test_parse_price_rejects_bad_input(self, value):
        with pytest.raises(ValidationError):
            parse_price(value)

    def test_parse_price_blank(self):
        assert parse_price("  ") == 0
        with pytest.raises(ValidationError, match="required"):
            parse_price("", required=True)


# ---------------------------------------------------------------------------
# Adjust
# ---------------------------------------------------------------------------
class TestAdjust:
    """OPEN -> OPEN with added lots and/or protective levels."""

    @pytest.mark.asyncio
    async def test_add_lots_submits_weighted_average(self, engine, orders, sample_order):
        await engine.adjust(sample_order, Decimal("120"), add_lots=1)

        request = orders.submit_mutation.await_args.args[0]
        assert request.order_status == OrderStatus.OPEN
        assert request.lots == 4
        assert request.quantity == 100
        assert request.price == Decimal("105.00")
        assert request.broker_id_str == "broker-001"
        assert request.customer_id_str == "cust-042"

    @pytest.mark.asyncio
    async def test_funds_equal_to_required_accepted(self, engine, funds, orders, sample_order):
        """2 lots x 25 x 1200 = 60000 against 100000 - 40000."""
        await engine.adjust(sample_order, Decimal("1200"), add_lots=2)
        funds.query_funds.assert_awaited_once_with(ProductType.INTRADAY)
        orders.submit_mutation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_funds_short_by_a_paisa_rejected(self, engine, orders, sample_order):
        with pytest.raises(InsufficientFundsError) as exc_info:
            await engine.adjust(sample_order, Decimal("1200.0002"), add_lots=2)

        assert exc_info.value.required == Decimal("60000.01")
        assert exc_info.value.available == Decimal("60000")
        orders.submit_mutation.assert_not_awaited()
        assert not engine.is_pending(sample_order.order_id)

    @pytest.mark.asyncio
    async def test_overnight_uses_full_available_limit(self, engine, funds, orders):
        order = make_order(product="NRML")
        funds.query_funds.return_value = _limits(available="60000", used="59999")
        await engine.adjust(order, Decimal("1200"), add_lots=2)
        orders.submit_mutation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_funds_service_failure_is_service_error(self, engine, funds, orders, sample_order):
        funds.query_funds.side_effect = RuntimeError("connection reset")
        with pytest.raises(ServiceError, match="Fund check failed"):
            await engine.adjust(sample_order, Decimal("120"), add_lots=1)
        orders.submit_mutation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_levels_only_skips_funds(self, engine, funds, orders, sample_order):
        await engine.adjust(sample_order, Decimal("100"), stop_loss="95", target="110")

        funds.query_funds.assert_not_awaited()
        request = orders.submit_mutation.await_args.args[0]
        assert request.stop_loss == Decimal("95")
        assert request.target == Decimal("110")
        assert request.lots == 3
        assert request.price == Decimal("100")

    @pytest.mark.asyncio
    async def test_invalid_stop_loss_never_submits(self, engine, funds, orders, sample_order):
        with pytest.raises(ValidationError):
            await engine.adjust(sample_order, Decimal("100"), add_lots=1, stop_loss="101")
        funds.query_funds.assert_not_awaited()
        orders.submit_mutation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_adding_lots_needs_live_price(self, engine, orders, sample_order):
        with pytest.raises(ValidationError, match="live price"):
            await engine.adjust(sample_order, None, add_lots=1)
        orders.submit_mutation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_negative_lots_rejected(self, engine, sample_order):
        with pytest.raises(ValidationError, match="lots"):
            await engine.adjust(sample_order, Decimal("100"), add_lots=-1)

    @pytest.mark.asyncio
    async def test_held_order_cannot_be_adjusted(self, engine, orders):
        order = make_order(order_status="HOLD")
        with pytest.raises(InvalidTransitionError) as exc_info:
            await engine.adjust(order, Decimal("100"), add_lots=1)
        assert exc_info.value.from_status == "HOLD"
        orders.submit_mutation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_broadcasts_updated_order(self, engine, orders, events, sample_order):
        updated = make_order(lots=4, quantity=100, price=105)
        orders.submit_mutation.return_value = updated

        result = await engine.adjust(sample_order, Decimal("120"), add_lots=1)

        assert result is updated
        events.broadcast.assert_awaited_once_with(ORDER_CHANGED, updated)

    @pytest.mark.asyncio
    async def test_service_failure_clears_pending_and_does_not_broadcast(
        self, engine, orders, events, sample_order
    ):
        orders.submit_mutation.side_effect = ServiceError("Server error: 500", status_code=500)
        with pytest.raises(ServiceError):
            await engine.adjust(sample_order, Decimal("120"), add_lots=1)

        assert not engine.is_pending(sample_order.order_id)
        events.broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_session(self, funds, orders, events, sample_order):
        engine = OrderAdjustmentEngine(funds, orders, events, SessionContext())
        with pytest.raises(SessionError):
            await engine.adjust(sample_order, Decimal("100"))


class TestSingleInFlight:
    """At most one mutation per order at a time."""

    @pytest.mark.asyncio
    async def test_second_adjust_while_pending_rejected(self, engine, funds, orders, sample_order):
        release = asyncio.Event()

        async def slow_submit(request):
            await release.wait()
            return None

        orders.submit_mutation.side_effect = slow_submit

        first = asyncio.create_task(engine.adjust(sample_order, Decimal("120"), add_lots=1))
        while orders.submit_mutation.await_count == 0:
            await asyncio.sleep(0)
        assert engine.is_pending(sample_order.order_id)

        with pytest.raises(ConcurrentSubmissionError):
            await engine.adjust(sample_order, Decimal("120"), add_lots=1)

        assert funds.query_funds.await_count == 1
        assert orders.submit_mutation.await_count == 1

        release.set()
        await first
        assert not engine.is_pending(sample_order.order_id)

    @pytest.mark.asyncio
    async def test_exit_while_adjust_pending_rejected(self, engine, orders, sample_order):
        release = asyncio.Event()

        async def slow_submit(request):
            await release.wait()

        orders.submit_mutation.side_effect = slow_submit
        first = asyncio.create_task(engine.adjust(sample_order, Decimal("100"), stop_loss="90"))
        while orders.submit_mutation.await_count == 0:
            await asyncio.sleep(0)

        with pytest.raises(ConcurrentSubmissionError):
            await engine.exit(sample_order, Decimal("100"))

        release.set()
        await first
        assert orders.submit_mutation.await_count == 1

    @pytest.mark.asyncio
    async def test_other_orders_are_independent(self, engine, orders, sample_order):
        release = asyncio.Event()

        async def submit(request):
            if request.order_id == sample_order.order_id:
                await release.wait()

        orders.submit_mutation.side_effect = submit
        first = asyncio.create_task(engine.hold(sample_order))
        while orders.submit_mutation.await_count == 0:
            await asyncio.sleep(0)

        await engine.hold(make_order(_id="ord-2"))
        assert engine.pending_orders == frozenset({"ord-1"})

        release.set()
        await first


# ---------------------------------------------------------------------------
# Exit / hold / edit price / exit all
# ---------------------------------------------------------------------------
class TestExit:
    @pytest.mark.asyncio
    async def test_exit_applies_jobbing(self, engine, orders):
        order = make_order(jobbin_price="0.5")
        await engine.exit(order, Decimal("200"))

        request = orders.submit_mutation.await_args.args[0]
        assert request.order_status == OrderStatus.CLOSED
        assert request.closed_ltp == Decimal("199.0000")
        assert request.closed_at == FIXED_NOW
        assert request.came_from == "Open"

    @pytest.mark.asyncio
    async def test_exit_from_hold(self, engine, orders):
        order = make_order(order_status="HOLD", side="SELL", jobbin_price="1")
        await engine.exit(order, "150")

        request = orders.submit_mutation.await_args.args[0]
        assert request.closed_ltp == Decimal("151.5000")
        assert request.to_payload()["came_From"] == "Open"

    @pytest.mark.asyncio
    async def test_exit_closed_order_rejected(self, engine, orders):
        with pytest.raises(InvalidTransitionError):
            await engine.exit(make_order(order_status="CLOSED"), Decimal("100"))
        orders.submit_mutation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exit_without_price_closes_at_zero(self, engine, orders):
        """No live price: jobbing is skipped and the service resolves the close."""
        await engine.exit(make_order(jobbin_price="0.5"), Decimal("0"))

        payload = orders.submit_mutation.await_args.args[0].to_payload()
        assert payload["order_status"] == "CLOSED"
        assert payload["closed_ltp"] == 0.0
        assert payload["came_From"] == "Open"


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_sends_status_only(self, engine, orders, sample_order):
        await engine.hold(sample_order)

        payload = orders.submit_mutation.await_args.args[0].to_payload()
        assert payload["order_status"] == "HOLD"
        assert payload["came_From"] == "Hold"
        assert "price" not in payload
        assert "lots" not in payload

    @pytest.mark.asyncio
    async def test_hold_requires_open(self, engine):
        with pytest.raises(InvalidTransitionError):
            await engine.hold(make_order(order_status="HOLD"))


class TestEditPrice:
    @pytest.mark.asyncio
    async def test_broker_can_overwrite_price(self, broker_engine, orders, events, sample_order):
        await broker_engine.edit_price(sample_order, "123.45")

        request = orders.submit_mutation.await_args.args[0]
        assert request.price == Decimal("123.45")
        assert request.lots is None
        events.broadcast.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_customer_cannot_edit_price(self, engine, orders, sample_order):
        with pytest.raises(PermissionDeniedError):
            await engine.edit_price(sample_order, "123.45")
        orders.submit_mutation.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["", "abc", "-1"])
    async def test_invalid_price_rejected(self, broker_engine, orders, sample_order, price):
        with pytest.raises(ValidationError):
            await broker_engine.edit_price(sample_order, price)
        orders.submit_mutation.assert_not_awaited()


class TestExitAll:
    @pytest.mark.asyncio
    async def test_exit_all_sends_price_map(self, broker_engine, orders, events):
        first = make_order()
        second = make_order(_id="ord-2", instrument_token="222")

        await broker_engine.exit_all([first, second], {"ord-1": Decimal("101.5")})

        orders.exit_all.assert_awaited_once_with(
            "broker-001",
            "cust-042",
            {"ord-1": Decimal("101.5"), "ord-2": Decimal("0")},
            FIXED_NOW,
        )
        events.broadcast.assert_awaited_once_with(ORDER_CHANGED, None)
        assert broker_engine.pending_orders == frozenset()

    @pytest.mark.asyncio
    async def test_exit_all_requires_broker(self, engine, orders, sample_order):
        with pytest.raises(PermissionDeniedError):
            await engine.exit_all([sample_order], {})
        orders.exit_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exit_all_with_nothing_open(self, broker_engine, orders):
        with pytest.raises(ValidationError):
            await broker_engine.exit_all([], {})
        orders.exit_all.assert_not_awaited()


class TestWithEventBus:
    @pytest.mark.asyncio
    async def test_subscribers_see_updated_order(self, funds, orders, session, sample_order):
        bus = EventBus()
        seen = []
        bus.subscribe(ORDER_CHANGED, seen.append)
        orders.submit_mutation.return_value = sample_order
        engine = OrderAdjustmentEngine(funds, orders, bus, session)

        await engine.hold(sample_order)

        assert seen == [sample_order]
