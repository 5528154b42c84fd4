"""CLI tool for admin operations.

Usage:
    python -m order_executor.cli create-admin
    python -m order_executor.cli run-once <account_id>
    python -m order_executor.cli refresh-news
"""

import asyncio
import sys
import getpass

from sqlmodel import Session, select

from order_executor.config import settings
from order_executor.database import engine, create_db_and_tables
from order_executor.models.user import User
from order_executor.services.auth import hash_password, generate_totp_secret, get_totp_uri
from order_executor.utils.logging import setup_logging


def create_admin():
    """Create an admin user with TOTP setup."""
    create_db_and_tables()

    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(User).where(User.username == username)).first()
        if existing:
            print(f"User '{username}' already exists.")
            sys.exit(1)

    password = getpass.getpass("Password: ")
    password_confirm = getpass.getpass("Confirm password: ")
    if password != password_confirm:
        print("Passwords do not match.")
        sys.exit(1)

    totp_secret = generate_totp_secret()
    totp_uri = get_totp_uri(totp_secret, username)

    user = User(
        username=username,
        hashed_password=hash_password(password),
        totp_secret=totp_secret,
    )

    with Session(engine) as session:
        session.add(user)
        session.commit()

    print(f"\nAdmin user '{username}' created successfully.")
    print(f"\nTOTP Secret: {totp_secret}")
    print(f"TOTP URI: {totp_uri}")
    print("\nScan the QR code below with your authenticator app:")

    import qrcode
    qr = qrcode.QRCode(box_size=1, border=1)
    qr.add_data(totp_uri)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def run_once(account_id: int):
    """Run a single tick for one account in the foreground."""
    from order_executor.engine.account_job import run_account_tick

    create_db_and_tables()
    result = asyncio.run(run_account_tick(account_id, force=True))
    if result is None:
        print(f"Tick for account {account_id} did not run (missing account or gateway, see logs).")
        sys.exit(1)
    print(f"{result.status}: {result.action} {result.message or ''}")
    if result.status == "error":
        sys.exit(2)


def refresh_news():
    """Fetch the economic calendar once and store it."""
    from order_executor.services.news_source import TradingViewNewsSource, refresh_news_events

    create_db_and_tables()

    async def _refresh() -> int:
        async with TradingViewNewsSource() as source:
            return await refresh_news_events(engine, source, settings.news_countries)

    count = asyncio.run(_refresh())
    print(f"Stored {count} high-importance events.")


def main():
    setup_logging()
    if len(sys.argv) < 2:
        print("Usage: python -m order_executor.cli <command>")
        print("Commands: create-admin, run-once <account_id>, refresh-news")
        sys.exit(1)

    command = sys.argv[1]
    if command == "create-admin":
        create_admin()
    elif command == "run-once":
        if len(sys.argv) < 3 or not sys.argv[2].isdigit():
            print("Usage: python -m order_executor.cli run-once <account_id>")
            sys.exit(1)
        run_once(int(sys.argv[2]))
    elif command == "refresh-news":
        refresh_news()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
