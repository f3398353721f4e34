"""Tests for fill reconciliation and the polling lifecycle of OrderMonitor."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_order
from tradeledger.engine.order_monitor import JOB_ID, OrderMonitor
from tradeledger.exceptions import BrokerAPIError, ConfigurationError, PersistenceError
from tradeledger.models.trade import ExitReason, TradeSide, TradeStatus

T0 = datetime(2024, 3, 1, 15, 30, tzinfo=timezone.utc)


def _broker(*batches) -> AsyncMock:
    """Broker whose get_orders returns each batch in turn, newest order first."""
    broker = AsyncMock()
    broker.get_orders.side_effect = [list(batch) for batch in batches]
    return broker


def _monitor(ledger, credentials=None, **kwargs) -> OrderMonitor:
    return OrderMonitor(ledger=ledger, credentials=credentials or MagicMock(), **kwargs)


# ---------------------------------------------------------------------------
# 1. reconcile_once
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_entry_then_exit_closes_trade_once(ledger):
    entry = make_order("buy-1", side="buy", filled_avg_price=178.50, filled_at=T0)
    exit_ = make_order(
        "sell-1", side="sell", type="limit", filled_avg_price=185.20,
        limit_price=185.00, filled_at=T0 + timedelta(days=2),
    )
    broker = _broker([entry], [exit_, entry], [exit_, entry])
    monitor = _monitor(ledger)

    first = await monitor.reconcile_once("user-1", broker=broker)
    assert (first.entries, first.exits) == (1, 0)
    trade = ledger.find_open_trade("user-1", "AAPL")
    assert trade.side == TradeSide.LONG
    assert trade.entry_price == 178.50
    assert trade.qty == 10

    second = await monitor.reconcile_once("user-1", broker=broker)
    assert (second.entries, second.exits, second.skipped) == (0, 1, 1)

    third = await monitor.reconcile_once("user-1", broker=broker)
    assert (third.entries, third.exits, third.skipped) == (0, 0, 2)

    closed = ledger.list_closed_trades("user-1")
    assert len(closed) == 1
    assert closed[0].status == TradeStatus.CLOSED
    assert closed[0].exit_reason == ExitReason.TAKE_PROFIT
    assert closed[0].exit_order_id == "sell-1"
    assert closed[0].pnl == pytest.approx(67.0)
    assert closed[0].pnl_percent == pytest.approx(3.7535, abs=1e-3)


@pytest.mark.asyncio
async def test_entry_and_exit_in_one_batch_are_booked_in_fill_order(ledger):
    entry = make_order("buy-1", side="buy", filled_at=T0)
    exit_ = make_order("sell-1", side="sell", type="stop", filled_avg_price=170.0, filled_at=T0 + timedelta(hours=1))
    monitor = _monitor(ledger)

    # Broker lists newest first
    result = await monitor.reconcile_once("user-1", broker=_broker([exit_, entry]))

    assert (result.entries, result.exits) == (1, 1)
    closed = ledger.list_closed_trades("user-1")
    assert closed[0].side == TradeSide.LONG
    assert closed[0].exit_reason == ExitReason.STOP_LOSS
    assert closed[0].pnl == pytest.approx(-85.0)


@pytest.mark.asyncio
async def test_short_round_trip(ledger):
    entry = make_order("sell-1", side="sell", filled_avg_price=100.0, filled_qty=5, filled_at=T0)
    cover = make_order(
        "buy-1", side="buy", type="trailing_stop", filled_avg_price=90.0, filled_qty=5,
        filled_at=T0 + timedelta(days=1),
    )
    monitor = _monitor(ledger)

    await monitor.reconcile_once("user-1", broker=_broker([cover, entry]))

    closed = ledger.list_closed_trades("user-1")
    assert closed[0].side == TradeSide.SHORT
    assert closed[0].exit_reason == ExitReason.TRAILING_STOP
    assert closed[0].pnl == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_unfilled_orders_are_ignored(ledger):
    canceled = make_order("buy-1", status="canceled", filled_qty=0, filled_avg_price=None)
    monitor = _monitor(ledger)

    result = await monitor.reconcile_once("user-1", broker=_broker([canceled]))

    assert (result.entries, result.exits, result.skipped) == (0, 0, 0)
    assert ledger.find_open_trade("user-1", "AAPL") is None


@pytest.mark.asyncio
async def test_entry_price_falls_back_to_limit_price(ledger):
    order = make_order("buy-1", type="limit", filled_avg_price=None, limit_price=177.0)
    monitor = _monitor(ledger)

    await monitor.reconcile_once("user-1", broker=_broker([order]))

    assert ledger.find_open_trade("user-1", "AAPL").entry_price == 177.0


@pytest.mark.asyncio
async def test_exit_without_price_is_an_order_error(ledger):
    entry = make_order("buy-1", filled_at=T0)
    bad_exit = make_order("sell-1", side="sell", filled_avg_price=None, filled_at=T0 + timedelta(hours=1))
    monitor = _monitor(ledger)

    result = await monitor.reconcile_once("user-1", broker=_broker([bad_exit, entry]))

    assert result.entries == 1
    assert result.exits == 0
    assert len(result.errors) == 1
    assert "sell-1" in result.errors[0]
    assert ledger.find_open_trade("user-1", "AAPL") is not None


@pytest.mark.asyncio
async def test_malformed_order_does_not_stop_the_batch(ledger):
    good = make_order("buy-2", symbol="MSFT", filled_at=T0 + timedelta(minutes=5))
    bad = make_order("buy-1", filled_at=T0)
    monitor = _monitor(ledger)
    original = monitor._open_trade

    def flaky_open(user_id, order):
        if order.id == "buy-1":
            raise ValueError("malformed order")
        return original(user_id, order)

    monitor._open_trade = flaky_open
    result = await monitor.reconcile_once("user-1", broker=_broker([good, bad]))

    assert result.entries == 1
    assert len(result.errors) == 1
    assert ledger.find_open_trade("user-1", "MSFT") is not None


@pytest.mark.asyncio
async def test_same_side_fill_on_open_trade_is_ignored(ledger, caplog):
    entry = make_order("buy-1", filled_at=T0)
    add_on = make_order("buy-2", filled_at=T0 + timedelta(hours=1))
    monitor = _monitor(ledger)

    with caplog.at_level(logging.WARNING):
        result = await monitor.reconcile_once("user-1", broker=_broker([add_on, entry]))
        again = await monitor.reconcile_once("user-1", broker=_broker([add_on, entry]))

    assert (result.entries, result.skipped) == (1, 1)
    assert (again.entries, again.skipped) == (0, 2)
    assert caplog.text.count("Ignoring buy fill buy-2") == 1
    _, total = ledger.list_trades("user-1")
    assert total == 1


@pytest.mark.asyncio
async def test_ignored_fill_stays_ignored_after_trade_closes(ledger):
    entry = make_order("buy-1", filled_at=T0)
    add_on = make_order("buy-2", filled_at=T0 + timedelta(hours=1))
    exit_ = make_order("sell-1", side="sell", filled_avg_price=185.20, filled_at=T0 + timedelta(hours=2))
    batch = [exit_, add_on, entry]
    monitor = _monitor(ledger)

    first = await monitor.reconcile_once("user-1", broker=_broker(batch))
    second = await monitor.reconcile_once("user-1", broker=_broker(batch))

    assert (first.entries, first.exits, first.skipped) == (1, 1, 1)
    assert (second.entries, second.exits, second.skipped) == (0, 0, 3)
    assert ledger.find_open_trade("user-1", "AAPL") is None
    _, total = ledger.list_trades("user-1")
    assert total == 1


@pytest.mark.asyncio
async def test_ignored_fill_survives_a_new_monitor(ledger):
    entry = make_order("buy-1", filled_at=T0)
    add_on = make_order("buy-2", filled_at=T0 + timedelta(hours=1))
    exit_ = make_order("sell-1", side="sell", filled_at=T0 + timedelta(hours=2))

    await _monitor(ledger).reconcile_once("user-1", broker=_broker([add_on, entry]))
    # Restart: fresh monitor, the trade then closes and the add-on is still in the window
    result = await _monitor(ledger).reconcile_once("user-1", broker=_broker([exit_, add_on, entry]))

    assert (result.entries, result.exits, result.skipped) == (0, 1, 2)
    assert ledger.find_open_trade("user-1", "AAPL") is None
    ignored = ledger.list_ignored_fills("user-1")
    assert [f.order_id for f in ignored] == ["buy-2"]
    assert ignored[0].trade_id == ledger.find_trade_by_entry_order_id("buy-1").id


@pytest.mark.asyncio
async def test_persistence_error_propagates():
    ledger = MagicMock()
    ledger.is_order_recorded.return_value = False
    ledger.find_open_trade.return_value = None
    ledger.create_trade.side_effect = PersistenceError("disk full")
    monitor = _monitor(ledger)

    with pytest.raises(PersistenceError):
        await monitor.reconcile_once("user-1", broker=_broker([make_order("buy-1")]))


@pytest.mark.asyncio
async def test_broker_error_propagates(ledger):
    broker = AsyncMock()
    broker.get_orders.side_effect = BrokerAPIError("timed out")
    monitor = _monitor(ledger)

    with pytest.raises(BrokerAPIError):
        await monitor.reconcile_once("user-1", broker=broker)


@pytest.mark.asyncio
async def test_uses_credential_provider_when_no_broker_given(ledger):
    credentials = MagicMock()
    credentials.get_client.return_value = _broker([make_order("buy-1")])
    monitor = _monitor(ledger, credentials, order_fetch_limit=25)

    await monitor.reconcile_once("user-1")

    credentials.get_client.assert_called_once_with("user-1")
    broker = credentials.get_client.return_value
    broker.get_orders.assert_awaited_once_with(status="closed", limit=25)


# ---------------------------------------------------------------------------
# 2. run_for_all_accounts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_one_failing_account_does_not_block_others(ledger):
    brokers = {
        "good-1": _broker([make_order("a-1")]),
        "good-2": _broker([make_order("b-1")]),
        "slow": _broker([]),
    }
    brokers["slow"].get_orders.side_effect = BrokerAPIError("timed out")

    def get_client(user_id):
        if user_id == "no-creds":
            raise ConfigurationError("No active Alpaca credential")
        return brokers[user_id]

    credentials = MagicMock()
    credentials.list_connected_users.return_value = ["good-1", "no-creds", "slow", "good-2"]
    credentials.get_client.side_effect = get_client
    monitor = _monitor(ledger, credentials, concurrency=2)

    summary = await monitor.run_for_all_accounts()

    assert summary.accounts == 4
    assert summary.succeeded == 2
    assert summary.failed == 2
    assert ledger.find_open_trade("good-1", "AAPL") is not None
    assert ledger.find_open_trade("good-2", "AAPL") is not None
    assert monitor.last_tick is summary


@pytest.mark.asyncio
async def test_listing_accounts_failure_is_logged(ledger):
    credentials = MagicMock()
    credentials.list_connected_users.side_effect = RuntimeError("db down")
    monitor = _monitor(ledger, credentials)

    summary = await monitor.run_for_all_accounts()

    assert summary.accounts == 0
    assert summary.finished_at is not None


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(ledger):
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_get_orders(**kwargs):
        entered.set()
        await release.wait()
        return []

    broker = AsyncMock()
    broker.get_orders.side_effect = slow_get_orders
    credentials = MagicMock()
    credentials.list_connected_users.return_value = ["user-1"]
    credentials.get_client.return_value = broker
    monitor = _monitor(ledger, credentials)

    first = asyncio.create_task(monitor.run_for_all_accounts())
    await entered.wait()

    overlapped = await monitor.run_for_all_accounts()
    assert overlapped.overlapped is True
    assert monitor.status()["tick_in_progress"] is True

    release.set()
    summary = await first
    assert summary.overlapped is False
    assert summary.succeeded == 1
    assert broker.get_orders.await_count == 1


@pytest.mark.asyncio
async def test_concurrency_is_bounded(ledger):
    active = 0
    peak = 0

    async def get_orders(**kwargs):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return []

    broker = AsyncMock()
    broker.get_orders.side_effect = get_orders
    credentials = MagicMock()
    credentials.list_connected_users.return_value = [f"user-{i}" for i in range(8)]
    credentials.get_client.return_value = broker
    monitor = _monitor(ledger, credentials, concurrency=3)

    summary = await monitor.run_for_all_accounts()

    assert summary.succeeded == 8
    assert peak <= 3


@pytest.mark.asyncio
async def test_reconcile_now_waits_for_running_tick(ledger):
    credentials = MagicMock()
    credentials.get_client.return_value = _broker([make_order("buy-1")])
    monitor = _monitor(ledger, credentials)

    result = await monitor.reconcile_now("user-1")

    assert result.entries == 1
    assert not monitor.status()["tick_in_progress"]


# ---------------------------------------------------------------------------
# 3. Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_is_idempotent(ledger):
    credentials = MagicMock()
    credentials.list_connected_users.return_value = []
    monitor = _monitor(ledger, credentials, poll_interval_seconds=60)

    monitor.start()
    monitor.start()
    try:
        jobs = monitor.scheduler.get_jobs()
        assert len(jobs) == 1
        assert jobs[0].id == JOB_ID
        assert jobs[0].max_instances == 1
        assert monitor.running
        assert monitor.status()["poll_interval_seconds"] == 60
    finally:
        await monitor.stop()

    assert not monitor.running
    assert monitor.status()["running"] is False


@pytest.mark.asyncio
async def test_stop_skips_accounts_not_yet_started(ledger):
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_get_orders(**kwargs):
        entered.set()
        await release.wait()
        return []

    broker = AsyncMock()
    broker.get_orders.side_effect = slow_get_orders
    credentials = MagicMock()
    credentials.list_connected_users.return_value = ["user-1", "user-2", "user-3"]
    credentials.get_client.return_value = broker
    monitor = _monitor(ledger, credentials, concurrency=1)

    tick = asyncio.create_task(monitor.run_for_all_accounts())
    await entered.wait()

    stopping = asyncio.create_task(monitor.stop())
    await asyncio.sleep(0)
    release.set()
    await stopping
    summary = await tick

    assert summary.succeeded == 1
    assert summary.not_started == 2
