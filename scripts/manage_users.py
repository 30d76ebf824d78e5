#!/usr/bin/env python3
"""Create accounts and prune expired sessions from the command line.

Usage:
    # Create a user (prints its id and a first access token):
    python scripts/manage_users.py create --email a@example.com --password secret123

    # Drop expired sessions for one user:
    python scripts/manage_users.py purge-sessions --user-id <id>

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
    JWT_SECRET: signing secret; must match the running service for the
                printed access token to be accepted
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from taskdock.service.errors import ServiceError


async def create_user(email: str, password: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from taskdock.api.schemas import _validate_email, _validate_password_strength
    from taskdock.service.runtime import get_runtime
    from taskdock.storage.models import USERS

    email = _validate_email(email)
    _validate_password_strength(password)
    runtime = get_runtime()
    existing = runtime.store.find_one(USERS, {"email": email})
    if existing:
        print(f"User {email} already exists (id: {existing['id']})")
        return {"user_id": existing["id"], "email": email, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, tokens = await runtime.auth.signup(email, password)
    return {
        "user_id": user.id,
        "email": email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def purge_sessions(user_id: str) -> int:
    from taskdock.service.runtime import get_runtime

    return get_runtime().sessions.purge_expired(user_id)


def main():
    parser = argparse.ArgumentParser(
        description="Manage taskdock users",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="create a user")
    create.add_argument("--email", default=os.environ.get("TASKDOCK_EMAIL"))
    create.add_argument("--password", default=os.environ.get("TASKDOCK_PASSWORD"))
    create.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    purge = sub.add_parser("purge-sessions", help="drop a user's expired sessions")
    purge.add_argument("--user-id", required=True)

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    if args.command == "create":
        if not args.email or not args.password:
            print("Error: --email and --password (or TASKDOCK_EMAIL/TASKDOCK_PASSWORD) required")
            sys.exit(1)
        try:
            result = asyncio.run(create_user(args.email, args.password, args.dry_run))
        except (ServiceError, ValueError) as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        if result["status"] == "created":
            print("\nUser created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
            print(f"  Access Token: {result['access_token'][:50]}...")
        return

    try:
        removed = purge_sessions(args.user_id)
    except ServiceError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    print(f"Removed {removed} expired session(s) for {args.user_id}")


if __name__ == "__main__":
    main()
