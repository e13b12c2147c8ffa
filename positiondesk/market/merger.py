"""Snapshot merging — baseline overlaid by the latest tick.

A display row starts from the REST baseline fetched when the view
opened; streamed ticks shadow baseline fields of the same name. Ticks
that cannot be trusted for the row's contract are discarded before
they reach the row.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional

import structlog

from positiondesk.schemas.market import DisplayRow, InstrumentRef, Tick, to_decimal

logger = structlog.get_logger()


def accepts_tick(instrument: InstrumentRef, tick: Optional[Tick]) -> bool:
    """Whether ``tick`` may overwrite the row for ``instrument``.

    Rejected when:
    - there is no tick, or its price is zero/missing;
    - the tick is for a different token than the row;
    - the row was recorded against its parent underlying, so the
      streamed price is the underlying's, not the contract's.
    """
    if tick is None or not tick.has_price:
        return False
    if tick.instrument_token != instrument.instrument_token:
        return False
    if instrument.recorded_against_underlying:
        return False
    return True


class SnapshotMerger:
    """Builds display rows from baselines and ticks."""

    def merge(
        self,
        baseline: Optional[Mapping[str, Any]],
        tick: Optional[Tick],
    ) -> dict[str, Any]:
        """Baseline fields overlaid by the tick's populated fields."""
        merged: dict[str, Any] = dict(baseline or {})
        if tick is not None:
            merged.update(tick.to_fields())
        return merged

    def resolve_price(
        self,
        instrument: InstrumentRef,
        baseline: Optional[Mapping[str, Any]],
        tick: Optional[Tick],
    ) -> Decimal:
        """Display price: valid tick → baseline price → stored reference price."""
        if accepts_tick(instrument, tick):
            return tick.ltp  # type: ignore[union-attr,return-value]

        if baseline is not None and not instrument.recorded_against_underlying:
            base_ltp = to_decimal(baseline.get("ltp", baseline.get("last_price")))
            if base_ltp is not None and base_ltp > 0:
                return base_ltp

        return instrument.reference_price

    def build_row(
        self,
        instrument: InstrumentRef,
        baseline: Optional[Mapping[str, Any]],
        tick: Optional[Tick],
        **extra: Any,
    ) -> DisplayRow:
        """Merged row for one instrument. Rejected ticks are left out."""
        usable = tick if accepts_tick(instrument, tick) else None
        if tick is not None and usable is None:
            logger.debug(
                "Discarded tick for row",
                instrument_token=instrument.instrument_token,
                tick_token=tick.instrument_token,
                has_price=tick.has_price,
            )
        return DisplayRow(
            instrument=instrument,
            snapshot=self.merge(baseline, usable),
            price=self.resolve_price(instrument, baseline, usable),
            **extra,
        )
