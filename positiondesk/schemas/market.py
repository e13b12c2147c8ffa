"""Market data schemas — ticks, REST baselines, and merged display rows.

Ticks are the hot path (thousands per second across a chain) and are
plain frozen dataclasses. Baselines and instrument references come from
REST responses and are validated with pydantic.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from positiondesk.portfolio.pnl import PnLResult
    from positiondesk.schemas.orders import Order


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a wire number to Decimal, or None when absent/unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def normalize_token(value: Any) -> Optional[str]:
    """Instrument tokens arrive as int from the ticker and str from REST."""
    if value is None or value == "":
        return None
    return str(value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Epoch seconds; milliseconds when implausibly large
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Tick:
    """Latest streamed state of one instrument.

    Fields other than the token are optional: ltp-mode packets carry
    only a price, full-mode packets carry ohlc and depth too.
    """
    instrument_token: str
    ltp: Optional[Decimal] = None
    timestamp: Optional[datetime] = None
    volume: Optional[int] = None
    change: Optional[float] = None
    ohlc: Optional[dict[str, Any]] = None
    depth: Optional[dict[str, Any]] = None

    @property
    def has_price(self) -> bool:
        return self.ltp is not None and self.ltp > 0

    def to_fields(self) -> dict[str, Any]:
        """Populated fields only, so absent values never shadow a baseline."""
        fields: dict[str, Any] = {"instrument_token": self.instrument_token}
        if self.ltp is not None:
            fields["ltp"] = self.ltp
        if self.timestamp is not None:
            fields["timestamp"] = self.timestamp
        if self.volume is not None:
            fields["volume"] = self.volume
        if self.change is not None:
            fields["change"] = self.change
        if self.ohlc is not None:
            fields["ohlc"] = self.ohlc
        if self.depth is not None:
            fields["depth"] = self.depth
        return fields

    @classmethod
    def from_packet(cls, packet: Mapping[str, Any]) -> Optional[Tick]:
        """Build a Tick from a transport packet; None if it has no token.

        Accepts both Kite ticker names (``last_price``,
        ``exchange_timestamp``, ``volume_traded``) and the short names
        relayed by the desk socket (``ltp``, ``timestamp``).
        """
        token = normalize_token(packet.get("instrument_token", packet.get("token")))
        if token is None:
            return None

        ltp = packet.get("ltp")
        if ltp is None:
            ltp = packet.get("last_price")

        timestamp = (
            packet.get("exchange_timestamp")
            or packet.get("last_trade_time")
            or packet.get("timestamp")
        )
        volume = packet.get("volume_traded", packet.get("volume"))

        return cls(
            instrument_token=token,
            ltp=to_decimal(ltp),
            timestamp=_parse_timestamp(timestamp),
            volume=int(volume) if volume is not None else None,
            change=float(packet["change"]) if packet.get("change") is not None else None,
            ohlc=dict(packet["ohlc"]) if packet.get("ohlc") else None,
            depth=dict(packet["depth"]) if packet.get("depth") else None,
        )


class Snapshot(BaseModel):
    """REST baseline for one instrument (quote endpoint response).

    Unknown quote fields are kept so they survive into the merged row.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    instrument_token: str = Field(..., description="Contract token")
    ltp: Optional[Decimal] = Field(default=None, description="Last traded price")
    ohlc: Optional[dict[str, Any]] = None
    depth: Optional[dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_wire_names(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if data.get("ltp") is None and data.get("last_price") is not None:
            data["ltp"] = data.pop("last_price")
        token = data.get("instrument_token", data.get("token"))
        if token is not None:
            data["instrument_token"] = str(token)
        data["ltp"] = to_decimal(data.get("ltp"))
        return data

    def to_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class InstrumentRef(BaseModel):
    """The contract a display row is about.

    ``underlying_token`` is set for derivatives. When the recorded
    token equals the underlying's token the row was stored against the
    parent instrument and streamed prices for it must not be trusted.
    """

    model_config = ConfigDict(frozen=True)

    instrument_token: str
    symbol: str = ""
    underlying_token: Optional[str] = None
    lot_size: int = Field(default=1, ge=1)
    reference_price: Decimal = Field(
        default=Decimal("0"),
        description="Last-resort display price (the order's stored price)",
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize_tokens(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            for key in ("instrument_token", "underlying_token"):
                if data.get(key) is not None:
                    data[key] = str(data[key])
        return data

    @property
    def recorded_against_underlying(self) -> bool:
        return (
            self.underlying_token is not None
            and self.underlying_token == self.instrument_token
        )


@dataclass
class DisplayRow:
    """One rendered line: instrument metadata plus merged market view."""
    instrument: InstrumentRef
    snapshot: dict[str, Any] = field(default_factory=dict)
    price: Decimal = Decimal("0")
    order: Optional["Order"] = None
    pnl: Optional["PnLResult"] = None

    @property
    def instrument_token(self) -> str:
        return self.instrument.instrument_token
