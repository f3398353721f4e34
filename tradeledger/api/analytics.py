"""Analytics API — performance metrics, trade journal and export."""

import logging
import math
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

import pandas as pd
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from tradeledger.api.deps import get_credentials, get_current_user_id, get_ledger
from tradeledger.config import settings
from tradeledger.engine.ledger import LedgerStore
from tradeledger.exceptions import BrokerAPIError, ConfigurationError
from tradeledger.models.trade import ExitReason, TradeStatus
from tradeledger.services.credentials import CredentialProvider
from tradeledger.services.performance import (
    approximate_initial_equity,
    calculate_performance_metrics,
)
from tradeledger.utils.constants import (
    DEFAULT_INITIAL_EQUITY,
    EXPORT_COLUMNS,
    TIMEFRAME_DAYS,
    VALID_TIMEFRAMES,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _safe_float(v):
    """Return None for inf/nan so JSON serialization doesn't blow up."""
    if isinstance(v, float) and (math.isinf(v) or math.isnan(v)):
        return None
    return v


def _timeframe_start(timeframe: str, now: datetime) -> datetime | None:
    if timeframe == "ALL":
        return None
    if timeframe == "YTD":
        return datetime(now.year, 1, 1, tzinfo=timezone.utc)
    return now - timedelta(days=TIMEFRAME_DAYS[timeframe])


@router.get("/performance")
async def performance(
    user_id: str = Depends(get_current_user_id),
    ledger: LedgerStore = Depends(get_ledger),
    credentials: CredentialProvider = Depends(get_credentials),
):
    """Performance metrics over the caller's closed trades.

    Initial equity is approximated as current equity minus realized pnl,
    which ignores deposits and withdrawals.
    """
    trades = ledger.list_closed_trades(user_id)

    equity_source = "broker"
    try:
        account = await credentials.get_client(user_id).get_account()
        current_equity = account.equity
        initial_equity = approximate_initial_equity(current_equity, trades)
    except (ConfigurationError, BrokerAPIError) as e:
        logger.warning(f"[user {user_id}] Account equity unavailable, estimating: {e}")
        equity_source = "estimated"
        initial_equity = DEFAULT_INITIAL_EQUITY
        current_equity = initial_equity + sum(t.pnl for t in trades)

    metrics = calculate_performance_metrics(
        trades, initial_equity, current_equity, risk_free_rate=settings.risk_free_rate,
    )
    payload = {k: _safe_float(v) for k, v in asdict(metrics).items() if k != "equity_curve"}
    payload["equity_curve"] = [asdict(p) for p in metrics.equity_curve]
    payload["initial_equity"] = initial_equity
    payload["current_equity"] = current_equity
    payload["equity_source"] = equity_source
    return payload


@router.get("/journal")
def journal(
    symbol: str | None = None,
    outcome: str | None = Query(default=None, pattern="^(WIN|LOSS)$"),
    exit_reason: ExitReason | None = None,
    timeframe: str = "ALL",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    ledger: LedgerStore = Depends(get_ledger),
):
    """Closed trades, newest first, with filters and paging."""
    if timeframe not in VALID_TIMEFRAMES:
        raise HTTPException(
            status_code=400,
            detail=f"timeframe must be one of: {', '.join(VALID_TIMEFRAMES)}",
        )

    trades, total = ledger.list_trades(
        user_id,
        status=TradeStatus.CLOSED,
        symbol=symbol,
        outcome=outcome,
        exit_reason=exit_reason,
        since=_timeframe_start(timeframe, datetime.now(timezone.utc)),
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "trades": trades,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/export")
def export_trades(
    format: str = Query(default="csv", pattern="^(csv|json)$"),
    user_id: str = Depends(get_current_user_id),
    ledger: LedgerStore = Depends(get_ledger),
):
    """All of the caller's trades as CSV (default) or JSON."""
    trades, _ = ledger.list_trades(user_id, limit=None)
    if format == "json":
        return trades

    rows = [t.model_dump(include=set(EXPORT_COLUMNS)) for t in trades]
    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    for col in ("side", "status", "exit_reason"):
        df[col] = df[col].map(lambda v: v.value if hasattr(v, "value") else v)

    filename = f"trades_{datetime.now(timezone.utc).date().isoformat()}.csv"
    return Response(
        content=df.to_csv(index=False),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
