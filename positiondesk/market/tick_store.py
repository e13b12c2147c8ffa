"""Process-wide latest-tick map.

The transport writes from its own thread (or callback); samplers read
from the event loop. Each slot holds an immutable Tick and is replaced
whole under a lock, so a reader never sees a half-written tick.
"""
from __future__ import annotations

import threading
from typing import Any, Iterable, Mapping, Optional

import structlog

from positiondesk.schemas.market import Tick, normalize_token

logger = structlog.get_logger()


class TickStore:
    """Thread-safe map from instrument token to its latest Tick.

    Last write wins: there are no sequence numbers, so a redelivered
    older tick replaces a newer one here. Consumers that care filter
    by timestamp (see ``market.sampler.tick_changed``).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ticks: dict[str, Tick] = {}
        self._writes = 0

    def put(self, tick: Tick) -> None:
        with self._lock:
            self._ticks[tick.instrument_token] = tick
            self._writes += 1

    def put_many(self, ticks: Iterable[Tick]) -> int:
        """Store a batch under one lock acquisition. Returns count stored."""
        count = 0
        with self._lock:
            for tick in ticks:
                self._ticks[tick.instrument_token] = tick
                count += 1
            self._writes += count
        return count

    def ingest(self, packets: Iterable[Mapping[str, Any]]) -> int:
        """Parse raw transport packets and store them.

        Packets without an instrument token are dropped.

        Returns:
            Number of ticks stored.
        """
        ticks = []
        dropped = 0
        for packet in packets:
            tick = Tick.from_packet(packet)
            if tick is None:
                dropped += 1
                continue
            ticks.append(tick)

        if dropped:
            logger.debug("Dropped tick packets without token", dropped=dropped)
        return self.put_many(ticks)

    def get(self, token: Any) -> Optional[Tick]:
        key = normalize_token(token)
        if key is None:
            return None
        with self._lock:
            return self._ticks.get(key)

    def get_many(self, tokens: Iterable[Any]) -> dict[str, Tick]:
        """Latest ticks for the given tokens; tokens never seen are omitted."""
        keys = [k for k in (normalize_token(t) for t in tokens) if k is not None]
        with self._lock:
            return {k: self._ticks[k] for k in keys if k in self._ticks}

    @property
    def write_count(self) -> int:
        """Total ticks written since creation."""
        return self._writes

    def __len__(self) -> int:
        with self._lock:
            return len(self._ticks)

    def __contains__(self, token: object) -> bool:
        key = normalize_token(token)
        with self._lock:
            return key in self._ticks
