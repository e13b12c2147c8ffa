"""Reconciliation loop — live ticks merged into a view's display rows.

Binds a PeriodicSampler to the TickStore and a set of rows. Each due
cycle reads the ticks for the rows' tokens, drops ticks the merger
would reject, and rebuilds only the rows whose tick changed.
"""
from __future__ import annotations

import inspect
import time
from typing import Awaitable, Callable, Mapping, Optional, Union

import structlog

from positiondesk.market.merger import SnapshotMerger, accepts_tick
from positiondesk.market.sampler import ChangedFn, PeriodicSampler, tick_changed
from positiondesk.market.tick_store import TickStore
from positiondesk.schemas.market import DisplayRow, InstrumentRef, Tick

logger = structlog.get_logger()

RowsCallback = Callable[[list[DisplayRow]], Union[None, Awaitable[None]]]
EnrichFn = Callable[[str, DisplayRow], DisplayRow]


class ReconciliationLoop:
    """Keeps a keyed set of display rows in step with the tick store.

    Rows are keyed by the caller (order id, ``"<strike>:CE"`` ...);
    several rows may share one instrument token.

    Args:
        tick_store: Source of latest ticks.
        on_rows: Receives the rows rebuilt in a cycle. May be async.
        interval: Throttle in seconds.
        frame_interval: Seconds between scheduling opportunities.
        merger: Row builder; a default SnapshotMerger if omitted.
        changed: Per-token tick predicate.
        enrich: Optional hook applied to every rebuilt row (e.g. P&L).
        clock: Monotonic time source.
        name: Label for logs.
    """

    def __init__(
        self,
        tick_store: TickStore,
        on_rows: RowsCallback,
        *,
        interval: float,
        frame_interval: float = 0.016,
        merger: Optional[SnapshotMerger] = None,
        changed: ChangedFn = tick_changed,
        enrich: Optional[EnrichFn] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "reconciliation",
    ):
        self._store = tick_store
        self._on_rows = on_rows
        self._merger = merger or SnapshotMerger()
        self._enrich = enrich
        self._name = name

        self._instruments: dict[str, InstrumentRef] = {}
        self._baselines: dict[str, Mapping] = {}
        self._rows: dict[str, DisplayRow] = {}
        self._keys_by_token: dict[str, list[str]] = {}

        self._sampler: PeriodicSampler[str, Tick] = PeriodicSampler(
            self._sample,
            self._publish,
            interval=interval,
            frame_interval=frame_interval,
            changed=changed,
            clock=clock,
            name=name,
        )

    @property
    def sampler(self) -> PeriodicSampler[str, Tick]:
        return self._sampler

    @property
    def closed(self) -> bool:
        return self._sampler.closed

    @property
    def tokens(self) -> set[str]:
        return set(self._keys_by_token)

    @property
    def rows(self) -> dict[str, DisplayRow]:
        return dict(self._rows)

    def bind(
        self,
        instruments: Mapping[str, InstrumentRef],
        baselines: Optional[Mapping[str, Mapping]] = None,
    ) -> list[DisplayRow]:
        """Replace the row set and build every row once.

        Ticks already in the store are merged immediately and recorded
        as published, so the first cycle does not repeat them.

        Returns:
            All rows, in ``instruments`` order.
        """
        self._instruments = dict(instruments)
        self._baselines = dict(baselines or {})
        self._keys_by_token = {}
        for key, instrument in self._instruments.items():
            if instrument.instrument_token:
                self._keys_by_token.setdefault(instrument.instrument_token, []).append(key)

        self._sampler.forget()
        current = self._sample()
        self._sampler.remember(current)

        self._rows = {}
        for key, instrument in self._instruments.items():
            self._rows[key] = self._build(key, instrument, current.get(instrument.instrument_token))

        logger.debug(
            "Rows bound",
            loop=self._name,
            rows=len(self._rows),
            tokens=len(self._keys_by_token),
            live=len(current),
        )
        return list(self._rows.values())

    def update_baselines(self, baselines: Mapping[str, Mapping]) -> list[DisplayRow]:
        """Swap in a freshly fetched baseline and rebuild all rows."""
        self._baselines = dict(baselines)
        published = self._sampler.published
        for key, instrument in self._instruments.items():
            self._rows[key] = self._build(key, instrument, published.get(instrument.instrument_token))
        return list(self._rows.values())

    def start(self):
        return self._sampler.start()

    async def poll(self, now: Optional[float] = None) -> bool:
        return await self._sampler.poll(now)

    async def stop(self) -> None:
        await self._sampler.stop()

    def _sample(self) -> dict[str, Tick]:
        ticks = self._store.get_many(self._keys_by_token)
        usable = {}
        for token, tick in ticks.items():
            keys = self._keys_by_token.get(token, ())
            if any(accepts_tick(self._instruments[k], tick) for k in keys):
                usable[token] = tick
        return usable

    def _build(self, key: str, instrument: InstrumentRef, tick: Optional[Tick]) -> DisplayRow:
        row = self._merger.build_row(
            instrument,
            self._baselines.get(instrument.instrument_token),
            tick,
        )
        if self._enrich is not None:
            row = self._enrich(key, row)
        return row

    async def _publish(self, changes: dict[str, Tick]) -> None:
        updated = []
        for token in changes:
            for key in self._keys_by_token.get(token, ()):
                row = self._build(key, self._instruments[key], changes[token])
                self._rows[key] = row
                updated.append(row)

        if not updated or self._sampler.closed:
            return
        result = self._on_rows(updated)
        if inspect.isawaitable(result):
            await result
