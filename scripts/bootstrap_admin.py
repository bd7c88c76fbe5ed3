#!/usr/bin/env python3
"""Create or promote an admin account.

Signup never grants the admin role, so the first admin is created here.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure@Pass1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure@Pass1' \\
        --first-name site --last-name admin --age 30

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (same rules as signup)
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from pydantic import ValidationError


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str,
    last_name: str,
    age: int,
    gender: str,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
    """
    # Imported late so the environment below is applied before settings load
    from murmur.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, "admin")
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.signup(
        email=email,
        password=password,
        first_name=first_name,
        last_name=last_name,
        age=age,
        gender=gender,
    )
    runtime.store.update_user(
        user.id, role="admin", is_confirmed=True, confirm_otp_hash=None
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Murmur",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default=os.environ.get("ADMIN_FIRST_NAME", "site"))
    parser.add_argument("--last-name", default=os.environ.get("ADMIN_LAST_NAME", "admin"))
    parser.add_argument("--age", type=int, default=int(os.environ.get("ADMIN_AGE", "30")))
    parser.add_argument("--gender", choices=["male", "female"], default="male")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from murmur.api.schemas import SignupRequest

    try:
        request = SignupRequest(
            email=args.email,
            password=args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            age=args.age,
            gender=args.gender,
        )
    except ValidationError as exc:
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ()))
            print(f"Error: {field}: {err.get('msg')}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/murmur-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                request.email,
                request.password,
                first_name=request.first_name,
                last_name=request.last_name,
                age=request.age,
                gender=request.gender,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {type(exc).__name__}: {exc}")
        sys.exit(1)

    if result["status"] in {"created", "promoted"}:
        print("\nAdmin ready. Sign in with POST /users/signin.")


if __name__ == "__main__":
    main()
