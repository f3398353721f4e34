"""Pydantic schemas for brokerage objects (orders, positions, account).

Alpaca returns prices and quantities as decimal strings and enums for
side/type/status. These schemas normalise both into plain floats and
lower-case strings so the rest of the service never touches SDK types.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _enum_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


class BrokerOrder(BaseModel):
    id: str
    symbol: str
    side: str  # "buy" | "sell"
    type: str = "market"  # market, limit, stop, stop_limit, trailing_stop
    status: str
    qty: float | None = None
    filled_qty: float = 0.0
    filled_avg_price: float | None = None
    limit_price: float | None = None
    stop_price: float | None = None
    filled_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("side", "type", "status", mode="before")
    @classmethod
    def _normalise_enum(cls, value: Any) -> str:
        value = _enum_value(value)
        if value is None:
            raise ValueError("must not be empty")
        return str(value).lower()

    @field_validator("qty", "filled_avg_price", "limit_price", "stop_price", mode="before")
    @classmethod
    def _parse_optional_decimal(cls, value: Any) -> float | None:
        return _to_float(value)

    @field_validator("filled_qty", mode="before")
    @classmethod
    def _parse_filled_qty(cls, value: Any) -> float:
        parsed = _to_float(value)
        return parsed if parsed is not None else 0.0

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"


class BrokerPosition(BaseModel):
    symbol: str
    qty: float
    avg_entry_price: float
    current_price: float = 0.0
    market_value: float = 0.0
    unrealized_pl: float = 0.0

    @field_validator(
        "qty", "avg_entry_price", "current_price", "market_value", "unrealized_pl",
        mode="before",
    )
    @classmethod
    def _parse_decimal(cls, value: Any) -> float:
        parsed = _to_float(value)
        return parsed if parsed is not None else 0.0


class BrokerAccount(BaseModel):
    equity: float
    buying_power: float = 0.0
    cash: float = 0.0

    @field_validator("equity", "buying_power", "cash", mode="before")
    @classmethod
    def _parse_decimal(cls, value: Any) -> float:
        parsed = _to_float(value)
        return parsed if parsed is not None else 0.0


class CredentialCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=120)
    api_key_id: str = Field(min_length=1)
    api_secret: str = Field(min_length=1)  # encrypted before storage
    paper: bool = True
    base_url: str | None = None

    @field_validator("user_id", "api_key_id", "api_secret")
    @classmethod
    def _trim_required_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("base_url")
    @classmethod
    def _validate_optional_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        url = value.strip()
        if not (url.startswith("http://") or url.startswith("https://")):
            raise ValueError("must start with http:// or https://")
        return url.rstrip("/")
