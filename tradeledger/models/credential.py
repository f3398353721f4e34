"""BrokerCredential model — encrypted Alpaca API credentials, one row per user."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class BrokerCredential(SQLModel, table=True):
    __tablename__ = "broker_credential"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    api_key_id: str = ""
    api_secret_encrypted: str = ""  # Fernet-encrypted Alpaca secret
    paper: bool = True
    base_url: str | None = None  # overrides the paper/live default when set
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
