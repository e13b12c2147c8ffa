"""Shared enumerations for PositionDesk schemas.

All enums used across the system are defined here to ensure
consistency and avoid circular imports.
"""

from enum import Enum


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Lifecycle states owned by the external order service."""
    OPEN = "OPEN"
    HOLD = "HOLD"
    CLOSED = "CLOSED"


class ProductType(str, Enum):
    """Margin product. Wire codes follow the broker (MIS / NRML)."""
    INTRADAY = "MIS"
    OVERNIGHT = "NRML"

    @classmethod
    def parse(cls, value: "str | ProductType") -> "ProductType":
        """Accept wire codes as well as the human names."""
        if isinstance(value, ProductType):
            return value
        text = str(value).strip().upper()
        if text in ("MIS", "INTRADAY"):
            return cls.INTRADAY
        if text in ("NRML", "CNC", "OVERNIGHT", "DELIVERY"):
            return cls.OVERNIGHT
        raise ValueError(f"Unknown product type: {value!r}")


class BrokerageMode(str, Enum):
    """Which legs of a position are charged brokerage."""
    ENTRY_ONLY = "entry-only"
    ROUND_TRIP = "round-trip"


class SubscriptionMode(str, Enum):
    """Packet mode requested from the market-data transport."""
    LTP = "ltp"
    QUOTE = "quote"
    FULL = "full"


class UserRole(str, Enum):
    BROKER = "broker"
    CUSTOMER = "customer"


class OrderAction(str, Enum):
    """User-facing actions mapped onto status transitions."""
    ADJUST = "ADJUST"
    EXIT = "EXIT"
    HOLD = "HOLD"
    EDIT_PRICE = "EDIT_PRICE"
    EXIT_ALL = "EXIT_ALL"
