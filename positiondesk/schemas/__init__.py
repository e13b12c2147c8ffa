"""PositionDesk data schemas.

Market data (ticks, baselines, display rows), externally owned orders
and outbound mutation payloads, plus the shared enumerations.
"""
from positiondesk.schemas.enums import (
    BrokerageMode,
    OrderAction,
    OrderSide,
    OrderStatus,
    ProductType,
    SubscriptionMode,
    UserRole,
)
from positiondesk.schemas.market import (
    DisplayRow,
    InstrumentRef,
    Snapshot,
    Tick,
)
from positiondesk.schemas.option_chain import (
    ChainContract,
    ChainStrike,
    OptionChain,
    SpotInstrument,
)
from positiondesk.schemas.orders import (
    Order,
    OrderMutationRequest,
    ProductLimits,
)

__all__ = [
    "BrokerageMode",
    "OrderAction",
    "OrderSide",
    "OrderStatus",
    "ProductType",
    "SubscriptionMode",
    "UserRole",
    "DisplayRow",
    "InstrumentRef",
    "Snapshot",
    "Tick",
    "ChainContract",
    "ChainStrike",
    "OptionChain",
    "SpotInstrument",
    "Order",
    "OrderMutationRequest",
    "ProductLimits",
]
