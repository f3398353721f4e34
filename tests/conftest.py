"""Shared fixtures: isolated settings, an in-memory ledger database and order factories."""

import os
from datetime import datetime, timezone

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment must be set first
os.environ.setdefault("TL_DATABASE_URL", "sqlite://")
os.environ.setdefault("TL_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("TL_JWT_SECRET", "test-secret")
os.environ.setdefault("TL_MONITOR_ENABLED", "false")

import pytest  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import create_engine  # noqa: E402

from tradeledger.database import create_db_and_tables  # noqa: E402
from tradeledger.engine.ledger import LedgerStore  # noqa: E402
from tradeledger.schemas.broker import BrokerOrder  # noqa: E402


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(db_engine) -> LedgerStore:
    return LedgerStore(db_engine)


def make_order(
    order_id: str,
    side: str = "buy",
    symbol: str = "AAPL",
    type: str = "market",
    status: str = "filled",
    filled_qty: float = 10,
    filled_avg_price: float | None = 178.50,
    limit_price: float | None = None,
    stop_price: float | None = None,
    filled_at: datetime | None = None,
) -> BrokerOrder:
    """Build a broker order the way the Alpaca client would hand it over."""
    return BrokerOrder(
        id=order_id,
        symbol=symbol,
        side=side,
        type=type,
        status=status,
        qty=filled_qty,
        filled_qty=filled_qty,
        filled_avg_price=filled_avg_price,
        limit_price=limit_price,
        stop_price=stop_price,
        filled_at=filled_at or datetime(2024, 3, 1, 15, 30, tzinfo=timezone.utc),
    )
