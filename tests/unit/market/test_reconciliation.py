"""Tests for ReconciliationLoop at positiondesk/market/reconciliation.py."""
from dataclasses import replace
from decimal import Decimal

import pytest

from positiondesk.market.reconciliation import ReconciliationLoop
from positiondesk.schemas.market import InstrumentRef
from tests.fixtures.market_data import make_tick


def _ref(token: str, price: str = "0", underlying: str | None = None) -> InstrumentRef:
    return InstrumentRef(
        instrument_token=token, underlying_token=underlying, reference_price=Decimal(price)
    )


@pytest.fixture
def batches():
    return []


@pytest.fixture
def loop(tick_store, batches, clock):
    return ReconciliationLoop(tick_store, batches.append, interval=0.2, clock=clock)


class TestBind:
    def test_bind_builds_every_row(self, loop):
        rows = loop.bind(
            {"ord-1": _ref("111", "95"), "ord-2": _ref("222", "50")},
            {"111": {"ltp": Decimal("100")}},
        )
        assert [r.price for r in rows] == [Decimal("100"), Decimal("50")]
        assert loop.tokens == {"111", "222"}

    def test_bind_merges_ticks_already_in_store(self, loop, tick_store):
        tick_store.put(make_tick("111", "101"))
        rows = loop.bind({"ord-1": _ref("111", "95")}, {"111": {"ltp": Decimal("100")}})
        assert rows[0].price == Decimal("101")

    @pytest.mark.asyncio
    async def test_first_cycle_does_not_repeat_bound_ticks(self, loop, tick_store, batches):
        tick_store.put(make_tick("111", "101"))
        loop.bind({"ord-1": _ref("111")})
        assert not await loop.poll()
        assert batches == []


class TestCycles:
    @pytest.mark.asyncio
    async def test_only_changed_rows_published(self, loop, tick_store, batches, clock):
        loop.bind({"ord-1": _ref("111"), "ord-2": _ref("222")})
        tick_store.put(make_tick("111", "101"))

        await loop.poll()

        assert len(batches) == 1
        assert [r.instrument_token for r in batches[0]] == ["111"]
        assert loop.rows["ord-1"].price == Decimal("101")

    @pytest.mark.asyncio
    async def test_identical_tick_published_once(self, loop, tick_store, batches, clock):
        loop.bind({"ord-1": _ref("111")})
        tick_store.put(make_tick("111", "101"))
        await loop.poll()
        clock.advance(0.2)
        tick_store.put(make_tick("111", "101"))
        await loop.poll()

        assert len(batches) == 1

    @pytest.mark.asyncio
    async def test_rows_sharing_a_token_update_together(self, loop, tick_store, batches):
        loop.bind({"ord-1": _ref("111"), "ord-2": _ref("111")})
        tick_store.put(make_tick("111", "101"))
        await loop.poll()
        assert {r.price for r in batches[0]} == {Decimal("101")}
        assert len(batches[0]) == 2

    @pytest.mark.asyncio
    async def test_corrupt_tick_is_not_published(self, loop, tick_store, batches):
        loop.bind({"ord-1": _ref("256265", "95", underlying="256265")})
        tick_store.put(make_tick("256265", "22015.4"))

        assert not await loop.poll()
        assert loop.rows["ord-1"].price == Decimal("95")

    @pytest.mark.asyncio
    async def test_zero_price_tick_is_not_published(self, loop, tick_store, batches):
        loop.bind({"ord-1": _ref("111", "95")})
        tick_store.put(make_tick("111", "0"))
        assert not await loop.poll()

    @pytest.mark.asyncio
    async def test_enrich_applies_to_rebuilt_rows(self, tick_store, clock):
        batches = []

        def enrich(key, row):
            return replace(row, snapshot={**row.snapshot, "key": key})

        loop = ReconciliationLoop(
            tick_store, batches.append, interval=0.2, enrich=enrich, clock=clock
        )
        rows = loop.bind({"ord-1": _ref("111")})
        assert rows[0].snapshot["key"] == "ord-1"

        tick_store.put(make_tick("111", "101"))
        await loop.poll()
        assert batches[0][0].snapshot["key"] == "ord-1"

    def test_update_baselines_rebuilds(self, loop):
        loop.bind({"ord-1": _ref("111", "95")})
        rows = loop.update_baselines({"111": {"ltp": "99"}})
        assert rows[0].price == Decimal("99")


class TestStop:
    @pytest.mark.asyncio
    async def test_no_rows_after_stop(self, loop, tick_store, batches):
        loop.bind({"ord-1": _ref("111")})
        await loop.stop()
        tick_store.put(make_tick("111", "101"))

        assert not await loop.poll()
        assert batches == []
        assert loop.closed
