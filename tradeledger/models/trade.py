"""Trade model — one round-trip position in the ledger, OPEN or CLOSED."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    MANUAL = "MANUAL"


class Trade(SQLModel, table=True):
    __tablename__ = "trade"
    __table_args__ = (
        # At most one OPEN trade per (user, symbol)
        Index(
            "ix_trade_open_user_symbol_unique",
            "user_id",
            "symbol",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    symbol: str = Field(index=True)
    side: TradeSide
    qty: float
    entry_price: float
    entry_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    entry_order_id: str = Field(unique=True, index=True)  # idempotency key
    status: TradeStatus = TradeStatus.OPEN

    # Set together, exactly once, on OPEN -> CLOSED
    exit_price: float | None = None
    exit_time: datetime | None = None
    exit_order_id: str | None = Field(default=None, unique=True, index=True)
    exit_reason: ExitReason | None = None
    pnl: float | None = None
    pnl_percent: float | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
