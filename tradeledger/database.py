"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine

from tradeledger.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)

# Indexes added after the first release; create_all() does not touch existing tables.
_TRADE_INDEXES = {
    "ix_trade_entry_order_id_unique": "CREATE UNIQUE INDEX ix_trade_entry_order_id_unique ON trade (entry_order_id)",
    "ix_trade_exit_order_id_unique": "CREATE UNIQUE INDEX ix_trade_exit_order_id_unique ON trade (exit_order_id)",
    "ix_trade_open_user_symbol_unique": (
        "CREATE UNIQUE INDEX ix_trade_open_user_symbol_unique "
        "ON trade (user_id, symbol) WHERE status = 'OPEN'"
    ),
}


def _run_migrations(db_engine=None):
    """Ensure the ledger's uniqueness indexes exist on older databases."""
    from sqlalchemy import text

    db_engine = db_engine or engine
    inspector = inspect(db_engine)

    if "trade" not in inspector.get_table_names():
        return

    existing = {idx["name"] for idx in inspector.get_indexes("trade")}
    unique_columns = {
        tuple(idx["column_names"]) for idx in inspector.get_indexes("trade") if idx.get("unique")
    }
    for name, ddl in _TRADE_INDEXES.items():
        if name in existing:
            continue
        if name == "ix_trade_entry_order_id_unique" and ("entry_order_id",) in unique_columns:
            continue
        if name == "ix_trade_exit_order_id_unique" and ("exit_order_id",) in unique_columns:
            continue
        logger.info(f"Migrating: creating index {name}")
        with db_engine.connect() as conn:
            conn.execute(text(ddl))
            conn.commit()


def create_db_and_tables(db_engine=None):
    """Create all tables. Called on startup."""
    import tradeledger.models  # noqa: F401  registers tables on the metadata

    db_engine = db_engine or engine
    SQLModel.metadata.create_all(db_engine)
    _run_migrations(db_engine)

