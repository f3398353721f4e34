"""Shared API dependencies."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from tradeledger.engine.ledger import LedgerStore
from tradeledger.engine.order_monitor import OrderMonitor
from tradeledger.services.auth import decode_access_token
from tradeledger.services.credentials import CredentialProvider

bearer_scheme = HTTPBearer()


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """Validate the bearer token and return its subject as the user id."""
    user_id = decode_access_token(credentials.credentials)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return user_id


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def get_credentials(request: Request) -> CredentialProvider:
    return request.app.state.credentials


def get_order_monitor(request: Request) -> OrderMonitor:
    return request.app.state.order_monitor
