"""Realized PnL and exit-reason classification for closing fills.

All functions are pure computation — no I/O, no database access.
"""

from dataclasses import dataclass

from tradeledger.models.trade import ExitReason, Trade, TradeSide
from tradeledger.schemas.broker import BrokerOrder
from tradeledger.utils.constants import STOP_ORDER_TYPES


@dataclass
class PnlResult:
    """Realized profit/loss for a closed position."""
    pnl: float
    pnl_percent: float


def compute_pnl(trade: Trade, exit_price: float) -> PnlResult:
    """Realized PnL in dollars and as a percent of entry cost basis."""
    if trade.side == TradeSide.LONG:
        pnl = (exit_price - trade.entry_price) * trade.qty
    else:
        pnl = (trade.entry_price - exit_price) * trade.qty

    cost_basis = trade.entry_price * trade.qty
    pnl_percent = pnl / cost_basis * 100 if cost_basis != 0 else 0.0
    return PnlResult(pnl=pnl, pnl_percent=pnl_percent)


def is_closing_order(trade: Trade, order: BrokerOrder) -> bool:
    """LONG trades close on a sell, SHORT trades close on a buy."""
    if trade.side == TradeSide.LONG:
        return order.side == "sell"
    return order.side == "buy"


def classify_exit(order: BrokerOrder, trade: Trade) -> ExitReason:
    """Map the closing order's type to an exit reason.

    Any closing limit order counts as TAKE_PROFIT, whether or not the fill
    was favourable; bracket take-profit legs are limit orders.
    """
    if order.type == "trailing_stop":
        return ExitReason.TRAILING_STOP
    if order.type in STOP_ORDER_TYPES:
        return ExitReason.STOP_LOSS
    if order.type == "limit":
        return ExitReason.TAKE_PROFIT
    return ExitReason.MANUAL
