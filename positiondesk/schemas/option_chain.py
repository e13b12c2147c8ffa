"""Option chain schemas — strikes with call/put contracts and the spot
instrument of the underlying, as returned by the desk backend.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from positiondesk.schemas.market import InstrumentRef, to_decimal


class ChainContract(BaseModel):
    """One call or put contract at a strike."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    instrument_token: str
    tradingsymbol: str = ""
    ltp: Optional[Decimal] = None
    lot_size: int = Field(default=1, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if data.get("instrument_token") is not None:
            data["instrument_token"] = str(data["instrument_token"])
        if data.get("ltp") is None and data.get("last_price") is not None:
            data["ltp"] = data["last_price"]
        data["ltp"] = to_decimal(data.get("ltp"))
        if not data.get("lot_size"):
            data["lot_size"] = 1
        return data

    def instrument(self, underlying_token: Optional[str]) -> InstrumentRef:
        return InstrumentRef(
            instrument_token=self.instrument_token,
            symbol=self.tradingsymbol,
            underlying_token=underlying_token,
            lot_size=self.lot_size,
            reference_price=self.ltp or Decimal("0"),
        )

    def baseline(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"instrument_token": self.instrument_token}
        if self.ltp is not None:
            fields["ltp"] = self.ltp
        return fields


class ChainStrike(BaseModel):
    """One row of the chain."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    strike: Decimal
    call: Optional[ChainContract] = None
    put: Optional[ChainContract] = None


class SpotInstrument(BaseModel):
    """The underlying whose price the chain is centred on."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    token: str
    tradingsymbol: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            token = data.get("token", data.get("instrument_token"))
            if token is not None:
                data["token"] = str(token)
        return data


class OptionChain(BaseModel):
    """Chain for one underlying and expiry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    underlying: str
    segment: str = ""
    expiry: Optional[str] = None
    spot_instrument: Optional[SpotInstrument] = Field(default=None, alias="spotInstrumentInfo")
    chain: list[ChainStrike] = Field(default_factory=list)

    @property
    def spot_token(self) -> Optional[str]:
        return self.spot_instrument.token if self.spot_instrument else None

    def contract_tokens(self) -> list[str]:
        tokens = []
        for row in self.chain:
            for contract in (row.call, row.put):
                if contract is not None:
                    tokens.append(contract.instrument_token)
        return tokens
