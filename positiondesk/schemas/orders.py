"""Order schemas — externally owned orders, funds limits, and the
outbound mutation payload.

The order service is the source of truth. These models parse what it
returns and describe what we ask of it; nothing here is persisted.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

from positiondesk.schemas.enums import OrderSide, OrderStatus, ProductType
from positiondesk.schemas.market import InstrumentRef, to_decimal

OPTION_CHAIN_SOURCE = "ui_option_chain"


class Order(BaseModel):
    """An open, held, or closed position as reported by the order service."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    order_id: str = Field(..., alias="_id")
    symbol: str = ""
    instrument_token: Optional[str] = None
    underlying_token: Optional[str] = None
    side: OrderSide
    product: ProductType = ProductType.INTRADAY
    quantity: int = Field(default=0, ge=0)
    avg_price: Decimal = Field(default=Decimal("0"), alias="price")
    lots: int = Field(default=0, ge=0)
    lot_size: int = Field(default=1, ge=1)
    stop_loss: Decimal = Decimal("0")
    target: Decimal = Decimal("0")
    margin_blocked: Decimal = Decimal("0")
    jobbing_percent: Decimal = Field(default=Decimal("0"), alias="jobbin_price")
    status: OrderStatus = Field(default=OrderStatus.OPEN, alias="order_status")
    source: str = ""
    expiry: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_wire_shape(cls, data: Any) -> Any:
        """Pull fields the service nests under ``meta`` to the top level."""
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        meta = data.get("meta") or {}
        selected = meta.get("selectedStock") or {}

        if "_id" not in data and "order_id" in data:
            data["_id"] = data.pop("order_id")
        if data.get("_id") is not None:
            data["_id"] = str(data["_id"])

        if not data.get("lot_size"):
            data["lot_size"] = selected.get("lot_size") or 1
        if not data.get("symbol"):
            data["symbol"] = selected.get("tradingSymbol", "")
        if not data.get("source"):
            data["source"] = meta.get("from", "")
        if not data.get("expiry"):
            data["expiry"] = meta.get("expiry") or selected.get("expiry")

        for key in ("instrument_token", "underlying_token"):
            if data.get(key) is not None:
                data[key] = str(data[key])

        for key in ("price", "avg_price", "stop_loss", "target", "margin_blocked",
                    "jobbin_price", "jobbing_percent"):
            if key in data:
                data[key] = to_decimal(data[key]) or Decimal("0")

        if isinstance(data.get("side"), str):
            data["side"] = data["side"].upper()
        for key in ("order_status", "status"):
            if isinstance(data.get(key), str):
                data[key] = data[key].upper()
        if data.get("product") is not None:
            data["product"] = ProductType.parse(data["product"])
        for key in ("lots", "quantity"):
            if data.get(key) is not None:
                data[key] = int(Decimal(str(data[key])))
        return data

    @property
    def from_option_chain(self) -> bool:
        return self.source == OPTION_CHAIN_SOURCE

    @property
    def is_consistent(self) -> bool:
        """Lots and quantity agree."""
        return self.lots * self.lot_size == self.quantity

    def instrument(self) -> InstrumentRef:
        """Reference used to merge market data for this order's row.

        Only a known underlying token can mark the row as recorded
        against the parent. Without one the row prices from its own
        live tick, then the baseline, then the stored price.
        """
        return InstrumentRef(
            instrument_token=self.instrument_token or "",
            symbol=self.symbol,
            underlying_token=self.underlying_token,
            lot_size=self.lot_size,
            reference_price=self.avg_price,
        )


class ProductLimits(BaseModel):
    """Funds service response for one product."""

    model_config = ConfigDict(frozen=True)

    available_limit: Decimal = Decimal("0")
    used_limit: Decimal = Decimal("0")

    @field_validator("available_limit", "used_limit", mode="before")
    @classmethod
    def _as_decimal(cls, v: Any) -> Decimal:
        return to_decimal(v) or Decimal("0")


class OrderMutationRequest(BaseModel):
    """Outbound payload for one order transition.

    Only populated fields are sent; the service treats missing keys as
    "leave unchanged".
    """

    model_config = ConfigDict(frozen=True)

    broker_id_str: str
    customer_id_str: str
    order_id: str
    order_status: Optional[OrderStatus] = None
    instrument_token: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[OrderSide] = None
    product: Optional[ProductType] = None
    lots: Optional[int] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    target: Optional[Decimal] = None
    margin_blocked: Optional[Decimal] = None
    closed_ltp: Optional[Decimal] = None
    closed_at: Optional[datetime] = None
    came_from: Optional[str] = Field(default=None, serialization_alias="came_From")
    meta: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _lots_match_quantity(self) -> "OrderMutationRequest":
        if (self.lots is None) != (self.quantity is None):
            raise ValueError("lots and quantity must be sent together")
        return self

    @field_serializer("price", "stop_loss", "target", "margin_blocked", "closed_ltp")
    def _money(self, value: Optional[Decimal]) -> Optional[float]:
        return float(value) if value is not None else None

    def to_payload(self) -> dict[str, Any]:
        """JSON body for the order service."""
        return self.model_dump(mode="json", exclude_none=True, by_alias=True)
