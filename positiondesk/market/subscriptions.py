"""Subscription management against the market-data transport.

Keeps the transport's subscription set equal to the tokens a view is
displaying. Changes are serialised: tokens leaving the set are
unsubscribed before new ones are subscribed, so the transport-side
count stays bounded by the larger of the two sets.

Subscriptions do not survive a transport reconnect; the owner wires the
transport's reconnect signal to ``on_reconnect``.
"""
from __future__ import annotations

import asyncio
from typing import Iterable, Protocol

from positiondesk.exceptions import TransportError
from positiondesk.schemas.enums import SubscriptionMode
from positiondesk.schemas.market import normalize_token
from positiondesk.utils.logging import get_logger


class MarketDataTransport(Protocol):
    """Streaming connection that accepts subscription changes."""

    async def subscribe(self, tokens: list[str], mode: str) -> None: ...

    async def unsubscribe(self, tokens: list[str], mode: str) -> None: ...


class SubscriptionManager:
    """Maintains one view's active token set on the transport.

    A failed subscribe is logged and leaves the manager ``degraded``:
    the view keeps showing baseline data until a reconnect or manual
    refresh subscribes successfully.
    """

    def __init__(
        self,
        transport: MarketDataTransport,
        mode: SubscriptionMode = SubscriptionMode.QUOTE,
        *,
        name: str = "view",
    ):
        self._transport = transport
        self._mode = mode
        self._log = get_logger("subscriptions", correlation_id=name)
        self._lock = asyncio.Lock()
        self._active: set[str] = set()
        self._confirmed: set[str] = set()
        self._degraded = False
        self._closed = False
        self._last_error: TransportError | None = None

    @property
    def active_tokens(self) -> frozenset[str]:
        """Tokens the view currently needs."""
        return frozenset(self._active)

    @property
    def confirmed_tokens(self) -> frozenset[str]:
        """Tokens the transport has acknowledged and not yet released."""
        return frozenset(self._confirmed)

    @property
    def mode(self) -> SubscriptionMode:
        return self._mode

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def last_error(self) -> TransportError | None:
        """Most recent transport failure; cleared by a successful subscribe."""
        return self._last_error

    @property
    def closed(self) -> bool:
        return self._closed

    async def set_tokens(self, tokens: Iterable[object]) -> None:
        """Replace the active set: unsubscribe removed, then subscribe added."""
        wanted = {t for t in (normalize_token(x) for x in tokens) if t is not None}

        async with self._lock:
            if self._closed:
                self._log.debug("Ignoring token change on closed subscription")
                return

            removed = self._active - wanted
            added = wanted - self._active

            if removed:
                await self._unsubscribe(removed)
            self._active = wanted
            if added:
                await self._subscribe(added)

            self._log.debug(
                "Subscription set updated",
                active=len(self._active),
                added=len(added),
                removed=len(removed),
            )

    async def on_reconnect(self) -> None:
        """Resubscribe the whole active set after a transport reconnect."""
        async with self._lock:
            if self._closed or not self._active:
                return
            self._confirmed.clear()
            self._log.info(
                "Resubscribing after reconnect",
                token_count=len(self._active),
            )
            await self._subscribe(self._active)

    async def refresh(self) -> None:
        """Manual retry of the active set, e.g. from a refresh button."""
        await self.on_reconnect()

    async def close(self) -> None:
        """Release every token and refuse further changes."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            tokens = self._active | self._confirmed
            self._active = set()
            if tokens:
                await self._unsubscribe(tokens)
            self._log.debug("Subscription closed", released=len(tokens))

    async def _subscribe(self, tokens: set[str]) -> bool:
        ordered = sorted(tokens)
        try:
            await self._transport.subscribe(ordered, self._mode.value)
        except Exception as e:
            self._last_error = TransportError(str(e), tokens=ordered, mode=self._mode.value)
            self._log.warning(
                "Subscribe failed; serving baseline only",
                token_count=len(ordered),
                mode=self._mode.value,
                exc_info=self._last_error,
            )
            self._degraded = True
            return False

        self._confirmed.update(tokens)
        self._last_error = None
        self._degraded = not self._active <= self._confirmed
        return True

    async def _unsubscribe(self, tokens: set[str]) -> bool:
        ordered = sorted(tokens)
        try:
            await self._transport.unsubscribe(ordered, self._mode.value)
        except Exception as e:
            self._last_error = TransportError(str(e), tokens=ordered, mode=self._mode.value)
            self._log.warning(
                "Unsubscribe failed",
                token_count=len(ordered),
                mode=self._mode.value,
                exc_info=self._last_error,
            )
            return False
        finally:
            # Ticks for released tokens are ignored either way
            self._confirmed.difference_update(tokens)
        return True
