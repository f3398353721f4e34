"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tradeledger.config import settings
from tradeledger.database import create_db_and_tables
from tradeledger.engine.ledger import LedgerStore
from tradeledger.engine.order_monitor import OrderMonitor
from tradeledger.services.credentials import CredentialProvider
from tradeledger.utils.logging import setup_logging
from tradeledger.api import analytics, risk, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    ledger = LedgerStore()
    credentials = CredentialProvider()
    monitor = OrderMonitor(ledger=ledger, credentials=credentials)
    app.state.ledger = ledger
    app.state.credentials = credentials
    app.state.order_monitor = monitor

    if settings.monitor_enabled:
        monitor.start()

    yield

    await monitor.stop()


app = FastAPI(
    title="Trade Ledger",
    description="Brokerage fill reconciliation, trade ledger, risk and performance analytics",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(analytics.router)
app.include_router(risk.router)
app.include_router(system.router)
