"""CLI tool for admin operations.

Usage:
    python -m tradeledger.cli init-db
    python -m tradeledger.cli add-credential
    python -m tradeledger.cli reconcile <user_id>
"""

import asyncio
import getpass
import sys

from pydantic import ValidationError

from tradeledger.database import create_db_and_tables
from tradeledger.engine.ledger import LedgerStore
from tradeledger.engine.order_monitor import OrderMonitor
from tradeledger.exceptions import TradeLedgerError
from tradeledger.schemas.broker import CredentialCreate
from tradeledger.services.credentials import CredentialProvider
from tradeledger.utils.logging import setup_logging


def init_db():
    """Create tables and indexes."""
    create_db_and_tables()
    print("Database initialised.")


def add_credential():
    """Store an encrypted Alpaca credential for a user."""
    create_db_and_tables()

    user_id = input("User id: ").strip()
    api_key_id = input("Alpaca API key id: ").strip()
    api_secret = getpass.getpass("Alpaca API secret: ")
    paper = input("Paper account? [Y/n]: ").strip().lower() not in ("n", "no")

    try:
        data = CredentialCreate(
            user_id=user_id, api_key_id=api_key_id, api_secret=api_secret, paper=paper,
        )
    except ValidationError as e:
        print(f"Invalid credential: {e}")
        sys.exit(1)

    try:
        CredentialProvider().store_credential(data)
    except TradeLedgerError as e:
        print(f"Could not store credential: {e}")
        sys.exit(1)
    print(f"\nCredential stored for user '{user_id}' ({'paper' if paper else 'live'}).")


def reconcile(user_id: str):
    """Run one reconcile pass for a user and print the outcome."""
    create_db_and_tables()
    monitor = OrderMonitor(ledger=LedgerStore(), credentials=CredentialProvider())
    try:
        result = asyncio.run(monitor.reconcile_once(user_id))
    except TradeLedgerError as e:
        print(f"Reconcile failed: {e}")
        sys.exit(1)

    print(
        f"User {user_id}: {result.entries} entries, {result.exits} exits, "
        f"{result.skipped} skipped, {len(result.errors)} errors"
    )
    for error in result.errors:
        print(f"  - {error}")


def main():
    setup_logging()
    if len(sys.argv) < 2:
        print("Usage: python -m tradeledger.cli <command>")
        print("Commands: init-db, add-credential, reconcile <user_id>")
        sys.exit(1)

    command = sys.argv[1]
    if command == "init-db":
        init_db()
    elif command == "add-credential":
        add_credential()
    elif command == "reconcile":
        if len(sys.argv) < 3:
            print("Usage: python -m tradeledger.cli reconcile <user_id>")
            sys.exit(1)
        reconcile(sys.argv[2])
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
