"""System API — health check, order monitor status, manual reconcile."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException

from tradeledger.api.deps import get_current_user_id, get_order_monitor
from tradeledger.engine.order_monitor import OrderMonitor
from tradeledger.exceptions import BrokerAPIError, ConfigurationError, PersistenceError

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/monitor", dependencies=[Depends(get_current_user_id)])
def monitor_status(monitor: OrderMonitor = Depends(get_order_monitor)):
    """Current order monitor state and last tick summary."""
    return monitor.status()


@router.post("/reconcile")
async def reconcile_now(
    user_id: str = Depends(get_current_user_id),
    monitor: OrderMonitor = Depends(get_order_monitor),
):
    """Reconcile the caller's account immediately, outside the schedule."""
    try:
        result = await monitor.reconcile_now(user_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BrokerAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", **asdict(result)}
