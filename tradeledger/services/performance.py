"""Performance analytics over closed trades.

Equity curve, returns, Sharpe ratio, max drawdown and trade statistics.
All functions are pure computation — they work on a snapshot of trades
handed in by the caller and never touch the database.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Protocol

import numpy as np

from tradeledger.utils.constants import TRADING_DAYS_PER_YEAR


class ClosedTradeLike(Protocol):
    id: int | None
    exit_time: datetime | None
    pnl: float | None


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class EquityPoint:
    date: str  # YYYY-MM-DD
    equity: float


@dataclass
class DrawdownResult:
    max_drawdown: float
    max_drawdown_percent: float
    peak_date: str | None = None
    trough_date: str | None = None


@dataclass
class TradeStats:
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0


@dataclass
class PerformanceMetrics:
    total_return: float
    total_return_percent: float
    sharpe_ratio: float
    max_drawdown: float
    max_drawdown_percent: float
    win_rate: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    expectancy: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    equity_curve: list[EquityPoint] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Equity curve and returns
# ---------------------------------------------------------------------------

def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; the ledger always writes UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _sort_key(trade: ClosedTradeLike) -> tuple[datetime, int]:
    return _as_utc(trade.exit_time), trade.id if trade.id is not None else -1


def build_equity_curve(
    trades: Iterable[ClosedTradeLike],
    initial_equity: float,
) -> list[EquityPoint]:
    """Running account equity after each closed trade, oldest first.

    Ties on exit time are broken by trade id so the curve is the same for any
    input ordering. A synthetic point one day before the first exit carries
    the initial equity.
    """
    closed = sorted(
        (t for t in trades if t.exit_time is not None and t.pnl is not None),
        key=_sort_key,
    )
    if not closed:
        return []

    first_exit = _as_utc(closed[0].exit_time)
    curve = [EquityPoint(date=(first_exit - timedelta(days=1)).date().isoformat(), equity=initial_equity)]

    equity = initial_equity
    for trade in closed:
        equity += trade.pnl
        curve.append(EquityPoint(date=_as_utc(trade.exit_time).date().isoformat(), equity=equity))
    return curve


def calculate_returns(curve: list[EquityPoint]) -> list[float]:
    """Relative return between each adjacent pair of curve points."""
    returns: list[float] = []
    for prev, curr in zip(curve, curve[1:]):
        if prev.equity == 0:
            returns.append(0.0)
            continue
        returns.append((curr.equity - prev.equity) / prev.equity)
    return returns


# ---------------------------------------------------------------------------
# Risk-adjusted metrics
# ---------------------------------------------------------------------------

def calculate_sharpe_ratio(returns: list[float], risk_free_rate: float = 0.02) -> float:
    """Annualised Sharpe ratio, treating each return as one trading day.

    Returns 0 for fewer than two returns or zero volatility.
    """
    if len(returns) < 2:
        return 0.0

    values = np.asarray(returns, dtype=float)
    mean = float(np.mean(values))
    std = float(np.std(values))  # population std, ddof=0

    if std == 0 or np.isnan(std):
        return 0.0

    excess = mean - risk_free_rate / TRADING_DAYS_PER_YEAR
    return excess / std * float(np.sqrt(TRADING_DAYS_PER_YEAR))


def calculate_max_drawdown(curve: list[EquityPoint]) -> DrawdownResult:
    """Largest peak-to-trough decline in a single forward pass."""
    if not curve:
        return DrawdownResult(max_drawdown=0.0, max_drawdown_percent=0.0)

    peak = curve[0].equity
    peak_date = curve[0].date
    result = DrawdownResult(max_drawdown=0.0, max_drawdown_percent=0.0)

    for point in curve:
        if point.equity > peak:
            peak = point.equity
            peak_date = point.date

        drawdown = peak - point.equity
        if drawdown > result.max_drawdown:
            result = DrawdownResult(
                max_drawdown=drawdown,
                max_drawdown_percent=drawdown / peak * 100 if peak > 0 else 0.0,
                peak_date=peak_date,
                trough_date=point.date,
            )

    return result


def calculate_trade_stats(trades: Iterable[ClosedTradeLike]) -> TradeStats:
    """Win rate, average win/loss, profit factor and expectancy.

    Only trades with a realized pnl count. Break-even trades count towards
    the total but are neither wins nor losses.
    """
    pnls = [t.pnl for t in trades if t.pnl is not None]
    if not pnls:
        return TradeStats()

    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    total_wins = sum(wins)
    total_losses = abs(sum(losses))

    avg_win = total_wins / len(wins) if wins else 0.0
    avg_loss = total_losses / len(losses) if losses else 0.0
    win_rate = len(wins) / len(pnls) * 100

    if total_losses > 0:
        profit_factor = total_wins / total_losses
    else:
        profit_factor = float("inf") if total_wins > 0 else 0.0

    expectancy = (win_rate / 100) * avg_win - (1 - win_rate / 100) * avg_loss

    return TradeStats(
        win_rate=win_rate,
        avg_win=avg_win,
        avg_loss=avg_loss,
        profit_factor=profit_factor,
        expectancy=expectancy,
        total_trades=len(pnls),
        winning_trades=len(wins),
        losing_trades=len(losses),
    )


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

def approximate_initial_equity(current_equity: float, trades: Iterable[ClosedTradeLike]) -> float:
    """Starting equity as current equity minus all realized pnl.

    Only valid when the account has had no deposits or withdrawals since the
    first recorded trade; there is no persisted starting balance.
    """
    return current_equity - sum(t.pnl for t in trades if t.pnl is not None)


def calculate_performance_metrics(
    trades: list[ClosedTradeLike],
    initial_equity: float,
    current_equity: float,
    risk_free_rate: float = 0.02,
) -> PerformanceMetrics:
    """All performance metrics for one account's closed trades."""
    stats = calculate_trade_stats(trades)
    curve = build_equity_curve(trades, initial_equity)
    sharpe = calculate_sharpe_ratio(calculate_returns(curve), risk_free_rate)
    drawdown = calculate_max_drawdown(curve)

    total_return = current_equity - initial_equity
    total_return_percent = total_return / initial_equity * 100 if initial_equity != 0 else 0.0

    return PerformanceMetrics(
        total_return=total_return,
        total_return_percent=total_return_percent,
        sharpe_ratio=sharpe,
        max_drawdown=drawdown.max_drawdown,
        max_drawdown_percent=drawdown.max_drawdown_percent,
        win_rate=stats.win_rate,
        avg_win=stats.avg_win,
        avg_loss=stats.avg_loss,
        profit_factor=stats.profit_factor,
        expectancy=stats.expectancy,
        total_trades=stats.total_trades,
        winning_trades=stats.winning_trades,
        losing_trades=stats.losing_trades,
        equity_curve=curve,
    )
