"""Tests for SnapshotMerger at positiondesk/market/merger.py."""
from decimal import Decimal

import pytest

from positiondesk.market.merger import SnapshotMerger, accepts_tick
from positiondesk.schemas.market import InstrumentRef, Tick
from tests.fixtures.market_data import make_tick


@pytest.fixture
def contract() -> InstrumentRef:
    return InstrumentRef(
        instrument_token="111",
        symbol="NIFTY26MAR22000CE",
        underlying_token="256265",
        reference_price=Decimal("95"),
    )


@pytest.fixture
def recorded_on_parent() -> InstrumentRef:
    """Option order stored against the underlying's token."""
    return InstrumentRef(
        instrument_token="256265",
        symbol="NIFTY26MAR22000CE",
        underlying_token="256265",
        reference_price=Decimal("95"),
    )


class TestAcceptsTick:
    def test_valid_tick(self, contract):
        assert accepts_tick(contract, make_tick("111", "101"))

    def test_missing_tick(self, contract):
        assert not accepts_tick(contract, None)

    @pytest.mark.parametrize("ltp", [None, "0"])
    def test_zero_or_missing_price(self, contract, ltp):
        tick = Tick(instrument_token="111", ltp=Decimal(ltp) if ltp else None)
        assert not accepts_tick(contract, tick)

    def test_token_mismatch(self, contract):
        assert not accepts_tick(contract, make_tick("222", "101"))

    def test_recorded_against_underlying(self, recorded_on_parent):
        assert not accepts_tick(recorded_on_parent, make_tick("256265", "22015.4"))


class TestMerge:
    def test_tick_fields_shadow_baseline(self):
        merged = SnapshotMerger().merge(
            {"ltp": Decimal("100"), "ohlc": {"open": 98}, "oi": 1200},
            make_tick("111", "101", ohlc={"open": 99}),
        )
        assert merged["ltp"] == Decimal("101")
        assert merged["ohlc"] == {"open": 99}
        assert merged["oi"] == 1200

    def test_absent_tick_fields_keep_baseline(self):
        merged = SnapshotMerger().merge(
            {"ltp": Decimal("100"), "depth": {"buy": []}},
            make_tick("111", "101"),
        )
        assert merged["depth"] == {"buy": []}

    def test_no_baseline_no_tick(self):
        assert SnapshotMerger().merge(None, None) == {}


class TestResolvePrice:
    def test_valid_tick_wins(self, contract):
        price = SnapshotMerger().resolve_price(contract, {"ltp": "100"}, make_tick("111", "101"))
        assert price == Decimal("101")

    def test_baseline_when_no_tick(self, contract):
        assert SnapshotMerger().resolve_price(contract, {"ltp": "100"}, None) == Decimal("100")

    def test_reference_when_nothing_live(self, contract):
        assert SnapshotMerger().resolve_price(contract, {"ltp": 0}, None) == Decimal("95")

    def test_rejected_tick_falls_back(self, contract):
        price = SnapshotMerger().resolve_price(contract, None, make_tick("111", "0"))
        assert price == Decimal("95")

    def test_parent_recorded_row_keeps_stored_price(self, recorded_on_parent):
        """Neither the tick nor the baseline is the contract's own price."""
        price = SnapshotMerger().resolve_price(
            recorded_on_parent, {"ltp": "22010"}, make_tick("256265", "22015.4")
        )
        assert price == Decimal("95")


class TestBuildRow:
    def test_rejected_tick_never_reaches_row(self, recorded_on_parent):
        row = SnapshotMerger().build_row(
            recorded_on_parent, None, make_tick("256265", "22015.4")
        )
        assert row.price == Decimal("95")
        assert "ltp" not in row.snapshot

    def test_row_carries_instrument(self, contract):
        row = SnapshotMerger().build_row(contract, {"ltp": "100"}, make_tick("111", "101"))
        assert row.instrument_token == "111"
        assert row.snapshot["ltp"] == Decimal("101")
        assert row.price == Decimal("101")
