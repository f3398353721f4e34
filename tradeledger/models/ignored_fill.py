"""IgnoredFill model — filled orders seen but deliberately not booked as trades."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class IgnoredFill(SQLModel, table=True):
    __tablename__ = "ignored_fill"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    order_id: str = Field(unique=True, index=True)
    symbol: str
    side: str  # "buy" | "sell"
    qty: float
    reason: str
    trade_id: int | None = None  # OPEN trade the fill was on the same side of
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
