"""Order monitor — turns filled brokerage orders into ledger mutations.

One APScheduler interval job drives `run_for_all_accounts()`. Each tick:
connected accounts → recent closed orders per account → for every filled
order not yet in the ledger, either open a new trade (entry) or close the
matching OPEN trade (exit).

Guarantees:
- A fill is recorded at most once: the order-id check runs before any write,
  and the ledger's unique indexes reject a racing duplicate.
- Ticks never overlap: a tick that finds the previous one still running is
  skipped.
- One account's failure (credentials, broker, ledger) never stops the others.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tradeledger.config import settings
from tradeledger.engine.ledger import LedgerStore
from tradeledger.exceptions import (
    BrokerAPIError,
    ConfigurationError,
    DuplicateFillError,
    PersistenceError,
)
from tradeledger.models.trade import Trade, TradeSide
from tradeledger.schemas.broker import BrokerOrder
from tradeledger.services.credentials import CredentialProvider
from tradeledger.services.pnl import classify_exit, compute_pnl, is_closing_order

logger = logging.getLogger(__name__)

JOB_ID = "order_monitor"


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass for one account."""
    user_id: str
    entries: int = 0
    exits: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class TickSummary:
    """Outcome of one scheduled tick across all accounts."""
    started_at: datetime
    finished_at: datetime | None = None
    accounts: int = 0
    succeeded: int = 0
    failed: int = 0
    not_started: int = 0  # accounts left unprocessed because stop() was called
    overlapped: bool = False  # whole tick skipped, previous one still running


class OrderMonitor:
    """Polls every connected brokerage account and reconciles fills into the ledger.

    Construct one per process and hand it to whatever bootstraps the app.
    `start()` and `stop()` are idempotent.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        credentials: CredentialProvider,
        poll_interval_seconds: int | None = None,
        order_fetch_limit: int | None = None,
        concurrency: int | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.ledger = ledger
        self.credentials = credentials
        self.poll_interval_seconds = poll_interval_seconds or settings.poll_interval_seconds
        self.order_fetch_limit = order_fetch_limit or settings.order_fetch_limit
        self.concurrency = max(1, concurrency or settings.reconcile_concurrency)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.last_tick: TickSummary | None = None

        self._tick_lock = asyncio.Lock()
        self._stopping = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.scheduler.running and self.scheduler.get_job(JOB_ID) is not None

    def start(self):
        """Schedule the polling job and fire one run immediately."""
        if self.scheduler.get_job(JOB_ID):
            logger.debug("Order monitor already started")
            return

        self._stopping = False
        self.scheduler.add_job(
            self.run_for_all_accounts,
            trigger=IntervalTrigger(seconds=self.poll_interval_seconds),
            id=JOB_ID,
            name="Order monitor",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.poll_interval_seconds,
            next_run_time=datetime.now(timezone.utc),
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Order monitor started, polling every {self.poll_interval_seconds}s")

    async def stop(self):
        """Cancel future ticks and wait for an in-flight tick to wind down.

        Accounts already being reconciled finish; accounts not yet started in
        the current tick are skipped.
        """
        self._stopping = True
        if self.scheduler.get_job(JOB_ID):
            self.scheduler.remove_job(JOB_ID)

        async with self._tick_lock:
            pass

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Order monitor stopped")

    def status(self) -> dict:
        """Current monitor state for the API."""
        job = self.scheduler.get_job(JOB_ID) if self.scheduler.running else None
        last = self.last_tick
        return {
            "running": self.running,
            "tick_in_progress": self._tick_lock.locked(),
            "poll_interval_seconds": self.poll_interval_seconds,
            "next_run": str(job.next_run_time) if job and job.next_run_time else None,
            "last_tick": {
                "started_at": last.started_at.isoformat(),
                "finished_at": last.finished_at.isoformat() if last.finished_at else None,
                "accounts": last.accounts,
                "succeeded": last.succeeded,
                "failed": last.failed,
                "not_started": last.not_started,
            } if last else None,
        }

    # -----------------------------------------------------------------------
    # Tick
    # -----------------------------------------------------------------------

    async def run_for_all_accounts(self) -> TickSummary:
        """Reconcile every connected account, a bounded number at a time."""
        if self._tick_lock.locked():
            logger.warning("[order_monitor] Skipping overlapping tick")
            return TickSummary(started_at=datetime.now(timezone.utc), overlapped=True)

        async with self._tick_lock:
            summary = TickSummary(started_at=datetime.now(timezone.utc))
            try:
                user_ids = self.credentials.list_connected_users()
            except Exception as e:
                logger.error(f"[order_monitor] Could not list connected accounts: {e}", exc_info=True)
                summary.finished_at = datetime.now(timezone.utc)
                self.last_tick = summary
                return summary

            summary.accounts = len(user_ids)
            semaphore = asyncio.Semaphore(self.concurrency)

            async def _worker(user_id: str):
                async with semaphore:
                    if self._stopping:
                        summary.not_started += 1
                        return
                    if await self._reconcile_account(user_id):
                        summary.succeeded += 1
                    else:
                        summary.failed += 1

            await asyncio.gather(*(_worker(user_id) for user_id in user_ids))

            summary.finished_at = datetime.now(timezone.utc)
            self.last_tick = summary
            if summary.failed:
                logger.warning(
                    f"[order_monitor] Tick done: {summary.succeeded}/{summary.accounts} accounts ok, "
                    f"{summary.failed} failed"
                )
            else:
                logger.debug(f"[order_monitor] Tick done: {summary.accounts} accounts ok")
            return summary

    async def reconcile_now(self, user_id: str) -> ReconcileResult:
        """Reconcile one account on demand, waiting for any in-flight tick first."""
        async with self._tick_lock:
            return await self.reconcile_once(user_id)

    async def _reconcile_account(self, user_id: str) -> bool:
        """Reconcile one account, logging instead of raising. Returns success."""
        try:
            await self.reconcile_once(user_id)
            return True
        except ConfigurationError as e:
            logger.warning(f"[user {user_id}] Skipping account: {e}")
        except BrokerAPIError as e:
            logger.error(f"[user {user_id}] Broker error, will retry next tick: {e}")
        except PersistenceError as e:
            logger.error(f"[user {user_id}] Ledger write failed: {e}", exc_info=True)
        except Exception as e:
            logger.error(f"[user {user_id}] Reconcile error: {e}", exc_info=True)
        return False

    # -----------------------------------------------------------------------
    # Reconcile one account
    # -----------------------------------------------------------------------

    async def reconcile_once(self, user_id: str, broker=None) -> ReconcileResult:
        """Fetch the account's recent closed orders and record new fills.

        The broker lists orders newest first; filled orders are deliberately
        re-sorted oldest fill first so an entry is booked before its exit.
        Orders without a fill time go last, in broker order. A malformed order
        is logged and skipped.

        Raises:
            ConfigurationError: the account has no usable credentials.
            BrokerAPIError: the order fetch failed or timed out.
            PersistenceError: a ledger write failed. The message names the
                order, user and symbol so the fill can be replayed.
        """
        if broker is None:
            broker = self.credentials.get_client(user_id)

        orders = await broker.get_orders(status="closed", limit=self.order_fetch_limit)
        result = ReconcileResult(user_id=user_id)

        # Broker returns newest first; an entry must be booked before its exit
        filled = sorted(
            (o for o in orders if o.is_filled),
            key=lambda o: o.filled_at.timestamp() if o.filled_at else float("inf"),
        )
        for order in filled:
            try:
                action = self._process_filled_order(user_id, order)
            except DuplicateFillError:
                logger.info(f"[user {user_id}] Order {order.id} already recorded, skipping")
                result.skipped += 1
                continue
            except PersistenceError as e:
                logger.error(
                    f"[user {user_id}] Ledger write failed for order {order.id} "
                    f"({order.symbol} {order.side} {order.type} qty={order.filled_qty} "
                    f"avg={order.filled_avg_price} filled_at={order.filled_at}): {e}"
                )
                raise
            except Exception as e:
                message = f"Order {order.id} ({order.symbol}): {e}"
                logger.error(f"[user {user_id}] Failed to process order: {message}", exc_info=True)
                result.errors.append(message)
                continue

            if action == "entry":
                result.entries += 1
            elif action == "exit":
                result.exits += 1
            else:
                result.skipped += 1

        return result

    def _process_filled_order(self, user_id: str, order: BrokerOrder) -> str:
        """Record one filled order. Returns "entry", "exit" or "skipped"."""
        if self.ledger.is_order_recorded(order.id):
            return "skipped"

        open_trade = self.ledger.find_open_trade(user_id, order.symbol)
        if open_trade is not None:
            if is_closing_order(open_trade, order):
                self._close_trade(open_trade, order)
                return "exit"
            # Scaling into an open position is not tracked as a separate trade.
            # Recording it keeps it from opening a trade once this one closes.
            self.ledger.record_ignored_fill(
                user_id=user_id,
                order_id=order.id,
                symbol=order.symbol,
                side=order.side,
                qty=order.filled_qty,
                reason="same_side_as_open_trade",
                trade_id=open_trade.id,
            )
            logger.warning(
                f"[user {user_id}] Ignoring {order.side} fill {order.id} for {order.symbol}: "
                f"trade {open_trade.id} is already OPEN on the same side"
            )
            return "skipped"

        self._open_trade(user_id, order)
        return "entry"

    def _open_trade(self, user_id: str, order: BrokerOrder) -> Trade:
        if order.filled_avg_price is not None:
            entry_price = order.filled_avg_price
        elif order.limit_price is not None:
            entry_price = order.limit_price
        else:
            entry_price = 0.0

        trade = self.ledger.create_trade(
            user_id=user_id,
            symbol=order.symbol,
            side=TradeSide.LONG if order.side == "buy" else TradeSide.SHORT,
            qty=order.filled_qty,
            entry_price=entry_price,
            entry_order_id=order.id,
            entry_time=order.filled_at or datetime.now(timezone.utc),
        )
        logger.info(
            f"[user {user_id}] Recorded ENTRY: {order.symbol} {trade.side.value} "
            f"{order.filled_qty} @ {entry_price}"
        )
        return trade

    def _close_trade(self, trade: Trade, order: BrokerOrder) -> Trade:
        if order.filled_avg_price is not None:
            exit_price = order.filled_avg_price
        elif order.limit_price is not None:
            exit_price = order.limit_price
        else:
            raise ValueError("closing fill has neither filled_avg_price nor limit_price")

        exit_reason = classify_exit(order, trade)
        pnl = compute_pnl(trade, exit_price)

        closed = self.ledger.close_trade(
            trade.id,
            exit_price=exit_price,
            exit_time=order.filled_at or datetime.now(timezone.utc),
            exit_order_id=order.id,
            exit_reason=exit_reason,
            pnl=pnl.pnl,
            pnl_percent=pnl.pnl_percent,
        )
        logger.info(
            f"[user {trade.user_id}] Recorded EXIT: {trade.symbol} via {exit_reason.value}. "
            f"PnL: ${pnl.pnl:.2f} ({pnl.pnl_percent:.2f}%)"
        )
        return closed
