"""Position sizing, risk/reward and portfolio heat.

All functions are pure computation — no I/O, no database access. Inputs that
make a result undefined raise ComputationError (or InvalidRiskDistance) so a
silent default never misstates real risk.
"""

import math
from dataclasses import dataclass, field

from tradeledger.config import settings
from tradeledger.exceptions import ComputationError, InvalidRiskDistance
from tradeledger.schemas.broker import BrokerPosition


# ---------------------------------------------------------------------------
# Config and result types
# ---------------------------------------------------------------------------

@dataclass
class RiskConfig:
    """Portfolio-level risk limits, all in percent."""
    max_position_size_percent: float = 10.0  # max % of account in one position
    max_portfolio_heat: float = 20.0  # max % of account at risk
    max_leverage_ratio: float = 2.0
    default_risk_percent: float = 1.0  # default % of account risked per trade

    @classmethod
    def from_settings(cls) -> "RiskConfig":
        return cls(
            max_position_size_percent=settings.max_position_size_pct,
            max_portfolio_heat=settings.max_portfolio_heat_pct,
            max_leverage_ratio=settings.max_leverage_ratio,
            default_risk_percent=settings.default_risk_pct,
        )


DEFAULT_RISK_CONFIG = RiskConfig()


@dataclass
class PositionSizeResult:
    shares: int
    position_value: float
    risk_amount: float
    position_size_percent: float


@dataclass
class RiskRewardResult:
    ratio: float
    risk_amount: float  # per share
    reward_amount: float  # per share
    risk_percent: float  # relative to entry price
    reward_percent: float


@dataclass
class PortfolioRiskMetrics:
    total_heat: float  # % of account currently at risk
    largest_position_percent: float
    number_of_positions: int
    total_exposure: float  # total market value of all positions
    available_risk: float  # remaining heat capacity, never negative


@dataclass
class RiskValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class RecommendedPositionSize(PositionSizeResult):
    valid: bool = True
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------

def _risk_per_share(entry_price: float, stop_price: float) -> float:
    risk_per_share = abs(entry_price - stop_price)
    if risk_per_share == 0:
        raise InvalidRiskDistance()
    return risk_per_share


def calculate_position_size(
    account_value: float,
    risk_percent: float,
    entry_price: float,
    stop_price: float,
) -> PositionSizeResult:
    """Shares to buy so that hitting the stop loses risk_percent of the account.

    Raises:
        InvalidRiskDistance: entry_price == stop_price.
        ComputationError: account_value is not positive.
    """
    if account_value <= 0:
        raise ComputationError(f"Account value must be positive, got {account_value}")

    risk_amount = account_value * (risk_percent / 100)
    risk_per_share = _risk_per_share(entry_price, stop_price)

    shares = math.floor(risk_amount / risk_per_share)
    position_value = shares * entry_price
    position_size_percent = position_value / account_value * 100

    return PositionSizeResult(
        shares=shares,
        position_value=position_value,
        risk_amount=risk_amount,
        position_size_percent=position_size_percent,
    )


def calculate_risk_reward(
    entry_price: float,
    stop_price: float,
    target_price: float,
) -> RiskRewardResult:
    """Reward-to-risk ratio per share, with both legs as % of entry."""
    if entry_price <= 0:
        raise ComputationError(f"Entry price must be positive, got {entry_price}")

    risk_per_share = _risk_per_share(entry_price, stop_price)
    reward_per_share = abs(target_price - entry_price)

    return RiskRewardResult(
        ratio=reward_per_share / risk_per_share,
        risk_amount=risk_per_share,
        reward_amount=reward_per_share,
        risk_percent=risk_per_share / entry_price * 100,
        reward_percent=reward_per_share / entry_price * 100,
    )


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------

def calculate_portfolio_heat(
    positions: list[BrokerPosition],
    account_value: float,
    stop_prices: dict[str, float] | None = None,
    config: RiskConfig = DEFAULT_RISK_CONFIG,
) -> PortfolioRiskMetrics:
    """Aggregate exposure and at-risk capital across open positions.

    A position without a known stop is counted as fully at risk.
    """
    if account_value <= 0:
        raise ComputationError(f"Account value must be positive, got {account_value}")

    stop_prices = stop_prices or {}
    total_risk = 0.0
    total_exposure = 0.0
    largest_position_value = 0.0

    for position in positions:
        position_value = position.market_value
        total_exposure += position_value
        largest_position_value = max(largest_position_value, abs(position_value))

        stop_price = stop_prices.get(position.symbol)
        if stop_price:
            total_risk += abs(position.avg_entry_price - stop_price) * abs(position.qty)
        else:
            total_risk += abs(position_value)

    total_heat = total_risk / account_value * 100

    return PortfolioRiskMetrics(
        total_heat=total_heat,
        largest_position_percent=largest_position_value / account_value * 100,
        number_of_positions=len(positions),
        total_exposure=total_exposure,
        available_risk=max(0.0, config.max_portfolio_heat - total_heat),
    )


def validate_risk_limits(
    order_value: float,
    account_value: float,
    current_heat: float,
    config: RiskConfig = DEFAULT_RISK_CONFIG,
    current_exposure: float = 0.0,
) -> RiskValidation:
    """Check an order against configured limits. Never raises.

    Leverage is gross exposure (current_exposure plus the order) over the
    account value.
    """
    errors: list[str] = []

    if account_value <= 0:
        errors.append(f"Account value must be positive, got {account_value}")
    else:
        position_size_percent = order_value / account_value * 100
        if position_size_percent > config.max_position_size_percent:
            errors.append(
                f"Position size {position_size_percent:.1f}% exceeds limit of "
                f"{config.max_position_size_percent}%"
            )

        leverage = (abs(current_exposure) + abs(order_value)) / account_value
        if leverage > config.max_leverage_ratio:
            errors.append(
                f"Leverage {leverage:.2f}x exceeds limit of {config.max_leverage_ratio}x"
            )

    if current_heat > config.max_portfolio_heat:
        errors.append(
            f"Portfolio heat {current_heat:.1f}% exceeds limit of {config.max_portfolio_heat}%"
        )

    return RiskValidation(valid=not errors, errors=errors)


def get_recommended_position_size(
    account_value: float,
    buying_power: float,
    entry_price: float,
    stop_price: float,
    risk_percent: float | None = None,
    config: RiskConfig = DEFAULT_RISK_CONFIG,
    current_heat: float = 0.0,
    current_exposure: float = 0.0,
) -> RecommendedPositionSize:
    """Risk-based size capped to buying power, then checked against limits.

    Limit violations come back in `errors` rather than raising; only an
    undefined sizing (zero risk distance, non-positive account) raises.
    """
    if risk_percent is None:
        risk_percent = config.default_risk_percent

    sized = calculate_position_size(account_value, risk_percent, entry_price, stop_price)
    shares = sized.shares
    position_value = sized.position_value
    errors: list[str] = []

    if position_value > buying_power:
        shares = math.floor(max(buying_power, 0.0) / entry_price) if entry_price > 0 else 0
        position_value = shares * entry_price
        errors.append("Insufficient buying power for calculated position size")

    validation = validate_risk_limits(
        position_value, account_value, current_heat, config, current_exposure=current_exposure,
    )
    errors.extend(validation.errors)

    return RecommendedPositionSize(
        shares=shares,
        position_value=position_value,
        risk_amount=sized.risk_amount,
        position_size_percent=position_value / account_value * 100,
        valid=not errors,
        errors=errors,
    )
