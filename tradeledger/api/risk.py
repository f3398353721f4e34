"""Risk API — position sizing, risk/reward and portfolio heat."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException

from tradeledger.api.deps import get_credentials, get_current_user_id
from tradeledger.exceptions import BrokerAPIError, ComputationError, ConfigurationError
from tradeledger.schemas.risk import PortfolioHeatRequest, RiskCalculateRequest
from tradeledger.services.credentials import CredentialProvider
from tradeledger.services.risk import (
    RiskConfig,
    calculate_portfolio_heat,
    calculate_position_size,
    calculate_risk_reward,
    get_recommended_position_size,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/risk", tags=["risk"], dependencies=[Depends(get_current_user_id)])


@router.post("/calculate")
def calculate_risk(body: RiskCalculateRequest):
    """Position size, recommended size and risk/reward for a planned trade.

    Sizing errors (e.g. stop equal to entry) come back per section instead
    of failing the whole request.
    """
    config = RiskConfig.from_settings()
    risk_percent = body.risk_percent or config.default_risk_percent
    response: dict = {"success": True}

    if body.stop_price is not None:
        try:
            response["position_size"] = asdict(calculate_position_size(
                body.account_value, risk_percent, body.entry_price, body.stop_price,
            ))
            if body.buying_power is not None:
                response["recommended"] = asdict(get_recommended_position_size(
                    body.account_value,
                    body.buying_power,
                    body.entry_price,
                    body.stop_price,
                    risk_percent=risk_percent,
                    config=config,
                    current_exposure=body.current_exposure,
                ))
        except ComputationError as e:
            response["position_size_error"] = str(e)

    if body.stop_price is not None and body.target_price is not None:
        try:
            response["risk_reward"] = asdict(calculate_risk_reward(
                body.entry_price, body.stop_price, body.target_price,
            ))
        except ComputationError as e:
            response["risk_reward_error"] = str(e)

    return response


@router.post("/portfolio")
async def portfolio_heat(
    body: PortfolioHeatRequest,
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialProvider = Depends(get_credentials),
):
    """Portfolio heat across the caller's open brokerage positions."""
    try:
        client = credentials.get_client(user_id)
        account = await client.get_account()
        positions = await client.get_positions()
    except ConfigurationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BrokerAPIError as e:
        logger.warning(f"[user {user_id}] Portfolio heat unavailable: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    try:
        metrics = calculate_portfolio_heat(
            positions,
            account.equity,
            stop_prices=body.stop_prices,
            config=RiskConfig.from_settings(),
        )
    except ComputationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {**asdict(metrics), "account_value": account.equity}
