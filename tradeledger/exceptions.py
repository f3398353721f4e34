"""Exception hierarchy for the trade ledger."""


class TradeLedgerError(Exception):
    """Base class for all trade ledger errors."""


class ConfigurationError(TradeLedgerError):
    """Account has no usable brokerage credentials, or a required setting is missing."""


class BrokerAPIError(TradeLedgerError):
    """Network failure, timeout or non-2xx response from the brokerage."""


class ComputationError(TradeLedgerError, ValueError):
    """A risk or analytics input makes the result undefined."""


class InvalidRiskDistance(ComputationError):
    """Entry and stop price are equal, so risk per share is zero."""

    def __init__(self, message: str = "Stop price cannot equal entry price"):
        super().__init__(message)


class PersistenceError(TradeLedgerError):
    """A ledger write failed. Never swallowed: a lost exit leaves a trade OPEN."""


class DuplicateFillError(PersistenceError):
    """The order id is already recorded on a trade (unique constraint hit)."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} is already recorded in the ledger")
        self.order_id = order_id
