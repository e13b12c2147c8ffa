"""Throttled periodic sampling with change-only publishing.

One abstraction serves every live view: the order list, the option
chain, and the underlying spot tracker. A frame clock offers a
scheduling opportunity every few milliseconds; the sampler only does
work once the throttle interval has elapsed since its last publish,
and only publishes keys whose value actually changed.

Once stopped a sampler never publishes again, even if a poll was
already running when ``stop`` was called.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Generic, Hashable, Mapping, Optional, TypeVar, Union

import structlog

from positiondesk.schemas.market import Tick

logger = structlog.get_logger()

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

SampleFn = Callable[[], Mapping[K, V]]
ChangedFn = Callable[[Optional[V], V], bool]
PublishFn = Callable[[dict[K, V]], Union[None, Awaitable[None]]]


def value_changed(previous: Any, current: Any) -> bool:
    """Default predicate: plain inequality."""
    return previous != current


def tick_changed(previous: Optional[Tick], current: Tick) -> bool:
    """Tick predicate that ignores redelivered older ticks.

    The feed has no sequence numbers. When both ticks carry an exchange
    timestamp and the new one is older, it is treated as a redelivery
    and not published. Ticks without timestamps fall back to equality.
    """
    if previous is None:
        return True
    if (
        previous.timestamp is not None
        and current.timestamp is not None
        and current.timestamp < previous.timestamp
    ):
        return False
    return previous != current


def ltp_changed(previous: Optional[Tick], current: Tick) -> bool:
    """Price-only predicate for views that render nothing but the LTP."""
    if previous is None:
        return True
    if (
        previous.timestamp is not None
        and current.timestamp is not None
        and current.timestamp < previous.timestamp
    ):
        return False
    return previous.ltp != current.ltp


class PeriodicSampler(Generic[K, V]):
    """Samples a keyed source on a frame clock and publishes changes.

    Args:
        sample: Returns the current value for every key of interest.
        publish: Receives ``{key: value}`` for changed keys. May be async.
        interval: Minimum seconds between publishes (throttle).
        frame_interval: Seconds between scheduling opportunities.
        changed: ``changed(previous, current)`` per key; previous is
            None for a key never published.
        clock: Monotonic time source, injectable for tests.
        name: Label for logs.
    """

    def __init__(
        self,
        sample: SampleFn,
        publish: PublishFn,
        *,
        interval: float,
        frame_interval: float = 0.016,
        changed: ChangedFn = value_changed,
        clock: Callable[[], float] = time.monotonic,
        name: str = "sampler",
    ):
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")
        if frame_interval <= 0:
            raise ValueError(f"frame_interval must be > 0, got {frame_interval}")
        self._sample = sample
        self._publish = publish
        self._interval = interval
        self._frame_interval = frame_interval
        self._changed = changed
        self._clock = clock
        self._name = name

        self._last_publish: Optional[float] = None
        self._published: dict[K, V] = {}
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self._publish_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def frame_interval(self) -> float:
        return self._frame_interval

    @property
    def publish_count(self) -> int:
        return self._publish_count

    @property
    def published(self) -> dict[K, V]:
        """Last value published per key."""
        return dict(self._published)

    def is_due(self, now: float) -> bool:
        if self._last_publish is None:
            return True
        return now - self._last_publish >= self._interval

    def forget(self, keys: Optional[set[K]] = None) -> None:
        """Drop remembered values so the next sample republishes them.

        Called when rows are rebuilt from a fresh baseline.
        """
        if keys is None:
            self._published.clear()
        else:
            for key in keys:
                self._published.pop(key, None)

    def remember(self, values: Mapping[K, V]) -> None:
        """Record values as already published (e.g. baked into initial rows)."""
        self._published.update(values)

    def collect(self) -> dict[K, V]:
        """Changed values from one sample, without publishing."""
        current = self._sample()
        return {
            key: value
            for key, value in current.items()
            if self._changed(self._published.get(key), value)
        }

    async def poll(self, now: Optional[float] = None) -> bool:
        """One scheduling opportunity. Returns True if something was published."""
        if self._closed:
            return False
        now = self._clock() if now is None else now
        if not self.is_due(now):
            return False

        changes = self.collect()
        if not changes or self._closed:
            return False

        self._published.update(changes)
        self._last_publish = now
        self._publish_count += 1

        result = self._publish(changes)
        if inspect.isawaitable(result):
            await result
        return True

    async def run(self) -> None:
        """Drive ``poll`` from the frame clock until stopped."""
        logger.debug(
            "Sampler started",
            sampler=self._name,
            interval_ms=round(self._interval * 1000),
        )
        try:
            while not self._closed:
                try:
                    await self.poll()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Sampler poll failed", sampler=self._name, error=str(e))
                await asyncio.sleep(self._frame_interval)
        finally:
            logger.debug("Sampler stopped", sampler=self._name, publishes=self._publish_count)

    def start(self) -> asyncio.Task:
        """Schedule ``run`` on the running loop."""
        if self._closed:
            raise RuntimeError(f"Sampler {self._name} is stopped and cannot restart")
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self.run(), name=f"sampler:{self._name}"
            )
        return self._task

    async def stop(self) -> None:
        """Stop permanently. No publish happens after this returns."""
        self._closed = True
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
