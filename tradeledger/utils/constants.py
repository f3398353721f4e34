"""Shared constants."""

TRADING_DAYS_PER_YEAR = 252

# Orders with these types close a position on a triggered stop
STOP_ORDER_TYPES = {"stop", "stop_limit"}

# Journal timeframe filter -> lookback in days (YTD handled separately)
TIMEFRAME_DAYS: dict[str, int] = {
    "7D": 7,
    "30D": 30,
    "90D": 90,
}

VALID_TIMEFRAMES = ["7D", "30D", "90D", "YTD", "ALL"]

# Starting balance assumed when the broker account cannot be read (Alpaca paper default)
DEFAULT_INITIAL_EQUITY = 100_000.0

EXPORT_COLUMNS = [
    "symbol", "side", "status", "qty", "entry_price", "exit_price", "pnl", "pnl_percent",
    "entry_time", "exit_time", "exit_reason", "entry_order_id", "exit_order_id",
]
