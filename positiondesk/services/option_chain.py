"""Option-chain view — live call/put LTPs and the underlying's spot price.

Rows are keyed ``"<strike>:CE"`` / ``"<strike>:PE"``. Every contract
row carries the spot token as its underlying, so a contract recorded
against the underlying never takes the underlying's price.

Two samplers share the tick store: the chain loop (50 ms, LTP only)
and a single-key spot sampler.
"""
from __future__ import annotations

import inspect
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Union

import structlog

from positiondesk.config.view_profiles import DEFAULT_PROFILES, OPTION_CHAIN, SPOT, ViewProfile
from positiondesk.exceptions import PositionDeskError
from positiondesk.market.reconciliation import ReconciliationLoop
from positiondesk.market.sampler import PeriodicSampler, ltp_changed
from positiondesk.market.subscriptions import MarketDataTransport, SubscriptionManager
from positiondesk.market.tick_store import TickStore
from positiondesk.schemas.market import DisplayRow, Tick
from positiondesk.schemas.option_chain import OptionChain

logger = structlog.get_logger()

RowsCallback = Callable[[list[DisplayRow]], Union[None, Awaitable[None]]]
SpotCallback = Callable[[Decimal], Union[None, Awaitable[None]]]

CALL = "CE"
PUT = "PE"


class ChainSource(Protocol):
    async def fetch_option_chain(
        self, name: str, segment: str | None = None, expiry: str | None = None
    ) -> OptionChain: ...

    async def fetch_expiries(self, name: str, segment: str | None = None) -> list[str]: ...


def strike_key(strike: Decimal, side: str) -> str:
    """``22000:CE`` for Decimal("22000.00")."""
    text = format(strike.normalize(), "f")
    return f"{text}:{side}"


class OptionChainView:
    """One underlying's chain for one expiry, kept live."""

    def __init__(
        self,
        tick_store: TickStore,
        transport: MarketDataTransport,
        on_rows: Optional[RowsCallback] = None,
        *,
        chains: Optional[ChainSource] = None,
        on_spot: Optional[SpotCallback] = None,
        profile: ViewProfile = DEFAULT_PROFILES[OPTION_CHAIN],
        spot_profile: ViewProfile = DEFAULT_PROFILES[SPOT],
        frame_interval: float = 0.016,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = tick_store
        self._subscriptions = SubscriptionManager(
            transport, profile.subscription_mode, name="option_chain"
        )
        self._on_rows = on_rows
        self._on_spot = on_spot
        self._chains = chains

        self._chain: Optional[OptionChain] = None
        self._spot_token: Optional[str] = None
        self._spot_price: Optional[Decimal] = None
        self._loaded_key: Optional[tuple] = None
        self._generation = 0
        self._closed = False
        self.error: Optional[str] = None
        self.expiries: list[str] = []

        self._loop = ReconciliationLoop(
            tick_store,
            self._deliver,
            interval=profile.throttle_interval,
            frame_interval=frame_interval,
            changed=ltp_changed,
            clock=clock,
            name="option_chain",
        )
        self._spot_sampler: PeriodicSampler[str, Tick] = PeriodicSampler(
            self._sample_spot,
            self._publish_spot,
            interval=spot_profile.throttle_interval,
            frame_interval=frame_interval,
            changed=ltp_changed,
            clock=clock,
            name="spot",
        )

    @property
    def loop(self) -> ReconciliationLoop:
        return self._loop

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def spot_sampler(self) -> PeriodicSampler[str, Tick]:
        return self._spot_sampler

    @property
    def chain(self) -> Optional[OptionChain]:
        return self._chain

    @property
    def spot_token(self) -> Optional[str]:
        return self._spot_token

    @property
    def spot_price(self) -> Optional[Decimal]:
        """Latest streamed spot price; None until the first tick."""
        return self._spot_price

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def rows(self) -> dict[str, DisplayRow]:
        return self._loop.rows

    def chain_rows(self) -> list[tuple[Decimal, Optional[DisplayRow], Optional[DisplayRow]]]:
        """``(strike, call_row, put_row)`` in chain order."""
        if self._chain is None:
            return []
        rows = self._loop.rows
        return [
            (
                strike.strike,
                rows.get(strike_key(strike.strike, CALL)),
                rows.get(strike_key(strike.strike, PUT)),
            )
            for strike in self._chain.chain
        ]

    async def load(
        self,
        name: str,
        segment: str | None = None,
        expiry: str | None = None,
    ) -> bool:
        """Fetch a chain and activate it; repeated parameters are skipped."""
        if self._chains is None:
            raise RuntimeError("No chain source configured")
        if self._closed:
            return False

        key = (name.upper(), segment or "auto", expiry or "nearest")
        if key == self._loaded_key:
            logger.debug("Skipping duplicate chain fetch", underlying=key[0])
            return True

        self._generation += 1
        generation = self._generation
        try:
            chain = await self._chains.fetch_option_chain(name, segment, expiry)
        except PositionDeskError as e:
            if self._stale(generation):
                return False
            self.error = str(e)
            logger.error("Failed to load option chain", underlying=key[0], error=str(e))
            return False
        if self._stale(generation):
            return False

        try:
            expiries = await self._chains.fetch_expiries(name, segment)
        except PositionDeskError as e:
            logger.warning("Expiries unavailable", underlying=key[0], error=str(e))
            expiries = []
        if self._stale(generation):
            return False
        self.expiries = expiries

        loaded = await self._activate(chain, generation)
        if loaded:
            self._loaded_key = key
        return loaded

    async def activate(self, chain: OptionChain) -> bool:
        """Show ``chain``: subscribe its tokens, bind rows, start sampling."""
        if self._closed:
            raise RuntimeError("Option-chain view has been torn down")
        self._generation += 1
        self._loaded_key = None
        return await self._activate(chain, self._generation)

    async def teardown(self) -> None:
        """Stop both samplers and release every subscription."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        await self._loop.stop()
        await self._spot_sampler.stop()
        await self._subscriptions.close()
        logger.debug("Option-chain view torn down")

    async def _activate(self, chain: OptionChain, generation: int) -> bool:
        spot = chain.spot_token
        tokens = chain.contract_tokens()
        if spot:
            tokens.append(spot)

        await self._subscriptions.set_tokens(tokens)
        if self._stale(generation):
            return False

        instruments = {}
        baselines = {}
        for strike in chain.chain:
            for side, contract in ((CALL, strike.call), (PUT, strike.put)):
                if contract is None:
                    continue
                instruments[strike_key(strike.strike, side)] = contract.instrument(spot)
                baselines[contract.instrument_token] = contract.baseline()

        self.error = None
        self._chain = chain
        self._spot_token = spot
        self._spot_price = None
        self._spot_sampler.forget()

        rows = self._loop.bind(instruments, baselines)
        logger.info(
            "Option chain loaded",
            underlying=chain.underlying,
            expiry=chain.expiry,
            strikes=len(chain.chain),
            token_count=len(tokens),
            degraded=self._subscriptions.degraded,
        )
        await self._deliver(rows)

        if not self._closed:
            self._loop.start()
            self._spot_sampler.start()
        return True

    def _stale(self, generation: int) -> bool:
        return self._closed or generation != self._generation

    def _sample_spot(self) -> dict[str, Tick]:
        if self._spot_token is None:
            return {}
        tick = self._store.get(self._spot_token)
        if tick is None or not tick.has_price:
            return {}
        return {self._spot_token: tick}

    async def _publish_spot(self, changes: dict[str, Tick]) -> None:
        tick = changes.get(self._spot_token) if self._spot_token else None
        if tick is None or self._closed:
            return
        self._spot_price = tick.ltp
        if self._on_spot is not None:
            result = self._on_spot(tick.ltp)
            if inspect.isawaitable(result):
                await result

    async def _deliver(self, rows: list[DisplayRow]) -> None:
        if self._closed or self._on_rows is None:
            return
        result = self._on_rows(rows)
        if inspect.isawaitable(result):
            await result
