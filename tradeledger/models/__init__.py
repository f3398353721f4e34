"""Database models."""

from tradeledger.models.trade import Trade, TradeSide, TradeStatus, ExitReason
from tradeledger.models.credential import BrokerCredential
from tradeledger.models.ignored_fill import IgnoredFill

__all__ = [
    "Trade",
    "TradeSide",
    "TradeStatus",
    "ExitReason",
    "BrokerCredential",
    "IgnoredFill",
]
