"""Broker credential lookup: which accounts are connected, and a client for each."""

import logging

from sqlmodel import Session, select

from tradeledger.database import engine as default_engine
from tradeledger.exceptions import ConfigurationError
from tradeledger.models.credential import BrokerCredential
from tradeledger.schemas.broker import CredentialCreate
from tradeledger.services.alpaca_client import AlpacaClient
from tradeledger.services.encryption import decrypt, encrypt

logger = logging.getLogger(__name__)


class CredentialProvider:
    """Resolves user ids to working Alpaca clients from stored credentials."""

    def __init__(self, db_engine=None):
        self.engine = db_engine or default_engine

    def list_connected_users(self) -> list[str]:
        """User ids with an active, non-empty Alpaca credential."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(BrokerCredential.user_id).where(
                    BrokerCredential.is_active == True,  # noqa: E712
                    BrokerCredential.api_key_id != "",
                    BrokerCredential.api_secret_encrypted != "",
                )
            ).all()
        return list(rows)

    def get_client(self, user_id: str) -> AlpacaClient:
        """Build an Alpaca client for the user.

        Raises:
            ConfigurationError: no active credential, or it cannot be decrypted.
        """
        with Session(self.engine) as session:
            cred = session.exec(
                select(BrokerCredential).where(
                    BrokerCredential.user_id == user_id,
                    BrokerCredential.is_active == True,  # noqa: E712
                )
            ).first()

        if not cred or not cred.api_key_id or not cred.api_secret_encrypted:
            raise ConfigurationError(f"No active Alpaca credential for user {user_id}")

        return AlpacaClient(
            api_key_id=cred.api_key_id,
            api_secret=decrypt(cred.api_secret_encrypted),
            paper=cred.paper,
            base_url=cred.base_url,
        )

    def store_credential(self, data: CredentialCreate) -> BrokerCredential:
        """Create or replace the user's credential, encrypting the secret."""
        with Session(self.engine) as session:
            cred = session.exec(
                select(BrokerCredential).where(BrokerCredential.user_id == data.user_id)
            ).first()
            if cred is None:
                cred = BrokerCredential(user_id=data.user_id)

            cred.api_key_id = data.api_key_id
            cred.api_secret_encrypted = encrypt(data.api_secret)
            cred.paper = data.paper
            cred.base_url = data.base_url
            cred.is_active = True

            session.add(cred)
            session.commit()
            session.refresh(cred)
            logger.info(f"Stored Alpaca credential for user {data.user_id} (paper={data.paper})")
            return cred
