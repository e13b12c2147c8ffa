"""View factory — wires live views from settings and view profiles.

Profiles resolve in three layers: built-in defaults, then the
``POSITIONDESK_*_THROTTLE_MS`` environment overrides, then the YAML file
named by ``POSITIONDESK_PROFILES_PATH``. Each view gets its throttle and
subscription mode from its profile and the sampling clock period from
settings.
"""

from __future__ import annotations

from typing import Optional

import structlog

from positiondesk.config.settings import DeskSettings, get_settings
from positiondesk.config.view_profiles import OPTION_CHAIN, ORDER_LIST, SPOT, ViewProfiles
from positiondesk.market.subscriptions import MarketDataTransport
from positiondesk.market.tick_store import TickStore
from positiondesk.schemas.enums import ProductType
from positiondesk.services.event_bus import EventBus
from positiondesk.services.open_orders import OpenOrdersView, OrderSource, RowsCallback, SnapshotSource
from positiondesk.services.option_chain import ChainSource, OptionChainView, SpotCallback

logger = structlog.get_logger()


def load_profiles(settings: DeskSettings | None = None) -> ViewProfiles:
    """View profiles with environment and YAML overrides applied."""
    settings = settings or get_settings()
    profiles = ViewProfiles.defaults(
        order_list_throttle_ms=settings.order_list_throttle_ms,
        option_chain_throttle_ms=settings.option_chain_throttle_ms,
    )
    if settings.profiles_path is not None:
        profiles = ViewProfiles.from_yaml(settings.profiles_path, base=profiles)
        logger.info("View profiles loaded", path=str(settings.profiles_path))
    return profiles


def build_open_orders_view(
    client: OrderSource | SnapshotSource,
    tick_store: TickStore,
    transport: MarketDataTransport,
    events: EventBus,
    on_rows: Optional[RowsCallback] = None,
    *,
    product: ProductType | None = ProductType.INTRADAY,
    settings: DeskSettings | None = None,
    profiles: ViewProfiles | None = None,
) -> OpenOrdersView:
    """Open-orders view backed by one desk client for orders and snapshots.

    Args:
        client: Order and snapshot source, normally a DeskClient.
        tick_store: Store the transport writes ticks into.
        transport: Market-data transport for subscriptions.
        events: Bus carrying ``order-changed``.
        on_rows: Receives each published batch of rows.
        product: Product whose open orders are listed; None for all.
        settings: Defaults to ``get_settings()``.
        profiles: Defaults to ``load_profiles(settings)``.
    """
    settings = settings or get_settings()
    profiles = profiles or load_profiles(settings)
    profile = profiles.get(ORDER_LIST)
    logger.debug(
        "Building open-orders view",
        throttle_ms=profile.throttle_ms,
        mode=profile.subscription_mode.value,
        brokerage_mode=profile.brokerage_mode.value,
    )
    return OpenOrdersView(
        client,
        client,
        tick_store,
        transport,
        events,
        on_rows,
        profile=profile,
        brokerage_percent=settings.brokerage_percent,
        product=product,
        frame_interval=settings.frame_interval,
    )


def build_option_chain_view(
    client: ChainSource,
    tick_store: TickStore,
    transport: MarketDataTransport,
    on_rows: Optional[RowsCallback] = None,
    *,
    on_spot: Optional[SpotCallback] = None,
    settings: DeskSettings | None = None,
    profiles: ViewProfiles | None = None,
) -> OptionChainView:
    """Option-chain view that loads chains through ``client``."""
    settings = settings or get_settings()
    profiles = profiles or load_profiles(settings)
    profile = profiles.get(OPTION_CHAIN)
    logger.debug(
        "Building option-chain view",
        throttle_ms=profile.throttle_ms,
        mode=profile.subscription_mode.value,
    )
    return OptionChainView(
        tick_store,
        transport,
        on_rows,
        chains=client,
        on_spot=on_spot,
        profile=profile,
        spot_profile=profiles.get(SPOT),
        frame_interval=settings.frame_interval,
    )
