"""Ledger store — the only writer of Trade and IgnoredFill rows.

Every create and close is a single transaction. Order ids are unique on both
entry_order_id and exit_order_id, and at most one OPEN trade may exist per
(user_id, symbol), so a racing duplicate write fails at the database instead
of double-booking a fill. Fills that are deliberately not booked are kept
as IgnoredFill rows so they stay recorded once the trade they sat beside
closes.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from tradeledger.database import engine as default_engine
from tradeledger.exceptions import DuplicateFillError, PersistenceError
from tradeledger.models.ignored_fill import IgnoredFill
from tradeledger.models.trade import ExitReason, Trade, TradeSide, TradeStatus

logger = logging.getLogger(__name__)


class LedgerStore:
    """SQLModel-backed trade ledger."""

    def __init__(self, db_engine=None):
        self.engine = db_engine or default_engine

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def find_trade_by_entry_order_id(self, order_id: str) -> Trade | None:
        with Session(self.engine) as session:
            return session.exec(select(Trade).where(Trade.entry_order_id == order_id)).first()

    def find_trade_by_exit_order_id(self, order_id: str) -> Trade | None:
        with Session(self.engine) as session:
            return session.exec(select(Trade).where(Trade.exit_order_id == order_id)).first()

    def is_order_recorded(self, order_id: str) -> bool:
        """True if the order id is an entry or exit on any trade, or an ignored fill."""
        with Session(self.engine) as session:
            row = session.exec(
                select(Trade.id).where(
                    or_(Trade.entry_order_id == order_id, Trade.exit_order_id == order_id)
                )
            ).first()
            if row is not None:
                return True
            ignored = session.exec(
                select(IgnoredFill.id).where(IgnoredFill.order_id == order_id)
            ).first()
        return ignored is not None

    def find_open_trade(self, user_id: str, symbol: str) -> Trade | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Trade).where(
                    Trade.user_id == user_id,
                    Trade.symbol == symbol,
                    Trade.status == TradeStatus.OPEN,
                )
            ).first()

    def list_closed_trades(self, user_id: str) -> list[Trade]:
        """Closed trades with a realized pnl, oldest exit first."""
        with Session(self.engine) as session:
            return list(session.exec(
                select(Trade)
                .where(
                    Trade.user_id == user_id,
                    Trade.status == TradeStatus.CLOSED,
                    Trade.exit_time.is_not(None),
                    Trade.pnl.is_not(None),
                )
                .order_by(Trade.exit_time, Trade.id)
            ).all())

    def list_trades(
        self,
        user_id: str,
        status: TradeStatus | None = None,
        symbol: str | None = None,
        outcome: str | None = None,
        exit_reason: ExitReason | None = None,
        since: datetime | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> tuple[list[Trade], int]:
        """Filtered, newest-first page of a user's trades plus the total count."""
        conditions = [Trade.user_id == user_id]
        if status is not None:
            conditions.append(Trade.status == status)
        if symbol:
            conditions.append(func.lower(Trade.symbol).contains(symbol.lower()))
        if exit_reason is not None:
            conditions.append(Trade.exit_reason == exit_reason)
        if outcome == "WIN":
            conditions.append(Trade.pnl > 0)
        elif outcome == "LOSS":
            conditions.append(Trade.pnl < 0)
        if since is not None:
            conditions.append(Trade.exit_time >= since)

        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(Trade).where(*conditions)).one()
            stmt = (
                select(Trade)
                .where(*conditions)
                .order_by(Trade.exit_time.desc(), Trade.entry_time.desc(), Trade.id.desc())
                .offset(offset)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(session.exec(stmt).all()), total

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_trade(
        self,
        user_id: str,
        symbol: str,
        side: TradeSide,
        qty: float,
        entry_price: float,
        entry_order_id: str,
        entry_time: datetime,
    ) -> Trade:
        """Insert a new OPEN trade.

        Raises:
            DuplicateFillError: entry_order_id is already recorded.
            PersistenceError: any other write failure, including a second
                OPEN trade for the same (user_id, symbol).
        """
        trade = Trade(
            user_id=user_id,
            symbol=symbol,
            side=side,
            qty=qty,
            entry_price=entry_price,
            entry_order_id=entry_order_id,
            entry_time=entry_time,
            status=TradeStatus.OPEN,
        )
        try:
            with Session(self.engine) as session:
                session.add(trade)
                session.commit()
                session.refresh(trade)
                return trade
        except IntegrityError as e:
            if self.is_order_recorded(entry_order_id):
                raise DuplicateFillError(entry_order_id) from e
            raise PersistenceError(
                f"Could not create trade for user {user_id} {symbol} "
                f"(entry order {entry_order_id}): {e.orig}"
            ) from e
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Could not create trade for user {user_id} {symbol} "
                f"(entry order {entry_order_id}): {e}"
            ) from e

    def close_trade(
        self,
        trade_id: int,
        exit_price: float,
        exit_time: datetime,
        exit_order_id: str,
        exit_reason: ExitReason,
        pnl: float,
        pnl_percent: float,
    ) -> Trade:
        """Transition an OPEN trade to CLOSED, setting all exit fields at once.

        Raises:
            DuplicateFillError: exit_order_id is already recorded.
            PersistenceError: trade missing, already closed, or the write failed.
        """
        try:
            with Session(self.engine) as session:
                # Conditional on OPEN so two racing exits cannot both close the trade
                result = session.exec(
                    update(Trade)
                    .where(Trade.id == trade_id, Trade.status == TradeStatus.OPEN)
                    .values(
                        status=TradeStatus.CLOSED,
                        exit_price=exit_price,
                        exit_time=exit_time,
                        exit_order_id=exit_order_id,
                        exit_reason=exit_reason,
                        pnl=pnl,
                        pnl_percent=pnl_percent,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount == 0:
                    session.rollback()
                    trade = session.get(Trade, trade_id)
                    if trade is None:
                        raise PersistenceError(f"Trade {trade_id} not found")
                    if trade.exit_order_id == exit_order_id:
                        raise DuplicateFillError(exit_order_id)
                    raise PersistenceError(
                        f"Trade {trade_id} is already CLOSED by order {trade.exit_order_id}; "
                        f"refusing exit order {exit_order_id}"
                    )
                session.commit()
                return session.get(Trade, trade_id)
        except IntegrityError as e:
            if self.is_order_recorded(exit_order_id):
                raise DuplicateFillError(exit_order_id) from e
            raise PersistenceError(
                f"Could not close trade {trade_id} (exit order {exit_order_id}): {e.orig}"
            ) from e
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Could not close trade {trade_id} (exit order {exit_order_id}): {e}"
            ) from e

    def record_ignored_fill(
        self,
        user_id: str,
        order_id: str,
        symbol: str,
        side: str,
        qty: float,
        reason: str,
        trade_id: int | None = None,
    ) -> IgnoredFill:
        """Mark a filled order as seen so later ticks treat it as recorded.

        Raises:
            DuplicateFillError: order_id is already recorded as ignored.
            PersistenceError: any other write failure.
        """
        fill = IgnoredFill(
            user_id=user_id,
            order_id=order_id,
            symbol=symbol,
            side=side,
            qty=qty,
            reason=reason,
            trade_id=trade_id,
        )
        try:
            with Session(self.engine) as session:
                session.add(fill)
                session.commit()
                session.refresh(fill)
                return fill
        except IntegrityError as e:
            raise DuplicateFillError(order_id) from e
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Could not record ignored fill {order_id} for user {user_id} {symbol}: {e}"
            ) from e

    def list_ignored_fills(self, user_id: str) -> list[IgnoredFill]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(IgnoredFill)
                .where(IgnoredFill.user_id == user_id)
                .order_by(IgnoredFill.created_at, IgnoredFill.id)
            ).all())
