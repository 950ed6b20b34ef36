#!/usr/bin/env python3
"""CLI script to create a CRM user and optionally issue an API key.

Usage:
    python scripts/create_user.py --email admin@example.com --password changeme \
        --first-name Ada --last-name Admin --role admin
    python scripts/create_user.py --email bot@example.com --password changeme \
        --first-name Sync --last-name Bot --role sales_rep --api-key "nightly sync"

Connects directly to the database using DATABASE_URL from environment or .env file.
The raw API key is printed once; only its prefix and SHA-256 digest are stored.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.crm
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def create_user(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: str,
    api_key_name: str | None,
) -> None:
    """Create the user (and key) through the same stores the API uses."""
    from src.crm.auth.key_store import SqlApiKeyStore
    from src.crm.auth.principal import Role
    from src.crm.auth.user_store import SqlUserStore
    from src.crm.core.database import close_db, get_session, init_db
    from src.crm.core.security import (
        api_key_prefix,
        generate_api_key,
        hash_api_key,
        hash_password,
    )

    await init_db()

    users = SqlUserStore(session_factory=get_session)
    if await users.get_by_email(email) is not None:
        await close_db()
        sys.exit(f"User already exists: {email}")

    user = await users.create(
        email=email,
        hashed_password=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=Role(role),
    )
    print("User created:")
    print(f"  ID:    {user.id}")
    print(f"  Email: {user.email}")
    print(f"  Role:  {user.role.value}")

    if api_key_name:
        raw_key = generate_api_key()
        keys = SqlApiKeyStore(session_factory=get_session)
        record = await keys.create(
            user_id=user.id,
            name=api_key_name,
            key_prefix=api_key_prefix(raw_key),
            key_hash=hash_api_key(raw_key),
        )
        print(f"  API key ({record.name}, id {record.id}):")
        print(f"    {raw_key}")
        print("  This key will not be shown again.")

    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a CRM user")
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--password", required=True, help="Initial password")
    parser.add_argument("--first-name", required=True)
    parser.add_argument("--last-name", required=True)
    parser.add_argument(
        "--role",
        default="sales_rep",
        choices=["admin", "sales_manager", "sales_rep"],
        help="User role (default: sales_rep)",
    )
    parser.add_argument("--api-key", dest="api_key_name", default=None, help="Also issue an API key with this name")
    args = parser.parse_args()

    asyncio.run(
        create_user(
            args.email,
            args.password,
            args.first_name,
            args.last_name,
            args.role,
            args.api_key_name,
        )
    )


if __name__ == "__main__":
    main()
