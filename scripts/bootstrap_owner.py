#!/usr/bin/env python3
"""Seed an organization and its OWNER account.

Usage:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD='Str0ng!Pass' \
        python scripts/bootstrap_owner.py --organization "Acme Corp"

    python scripts/bootstrap_owner.py --email owner@example.com \
        --password 'Str0ng!Pass' --organization "Acme Corp" \
        --branch "North=dept-sales,dept-ops" --branch "South"

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password for the owner account (must pass the strength policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def parse_branch(value: str) -> Tuple[str, List[str]]:
    """``"North=dept-a,dept-b"`` -> ``("North", ["dept-a", "dept-b"])``."""
    name, _, departments = value.partition("=")
    name = name.strip()
    if not name:
        raise argparse.ArgumentTypeError(f"branch needs a name: {value!r}")
    return name, [d.strip() for d in departments.split(",") if d.strip()]


async def bootstrap_owner(
    email: str,
    password: str,
    organization: str,
    *,
    first_name: str = "Owner",
    last_name: str = "Account",
    industry: Optional[str] = None,
    website: Optional[str] = None,
    branches: Optional[List[Tuple[str, List[str]]]] = None,
    dry_run: bool = False,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from orgauth.service.auth import RegistrationInput, normalize_email
    from orgauth.service.runtime import Runtime

    runtime = Runtime()
    try:
        existing = runtime.store.get_user_by_email(normalize_email(email))
        if existing:
            print(f"User {email} already exists (id: {existing.id}, role: {existing.role.value})")
            return {"user_id": existing.id, "email": email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create organization {organization!r} owned by {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        result = await runtime.auth.register(
            RegistrationInput(
                email=email,
                password=password,
                first_name=first_name,
                last_name=last_name,
                organization_name=organization,
                industry=industry,
                website=website,
            )
        )
        created_branches = [
            runtime.store.add_branch(result.user.organization_id, name, departments)
            for name, departments in branches or []
        ]
        return {
            "user_id": result.user.id,
            "organization_id": result.user.organization_id,
            "email": result.user.email,
            "status": "created",
            "branches": [(b.id, b.name, b.department_ids) for b in created_branches],
            "access_token": result.tokens.access_token,
        }
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Create an organization and its OWNER",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("OWNER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("OWNER_PASSWORD"))
    parser.add_argument("--organization", required=True, help="Organization name")
    parser.add_argument("--first-name", default="Owner")
    parser.add_argument("--last-name", default="Account")
    parser.add_argument("--industry")
    parser.add_argument("--website")
    parser.add_argument(
        "--branch",
        action="append",
        type=parse_branch,
        default=[],
        help="NAME or NAME=dept1,dept2 (repeatable)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from orgauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_owner(
                args.email,
                args.password,
                args.organization,
                first_name=args.first_name,
                last_name=args.last_name,
                industry=args.industry,
                website=args.website,
                branches=args.branch,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for violation in exc.detail.get("violations", []):
            print(f"  - {violation}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOwner created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Organization ID: {result['organization_id']}")
        for branch_id, name, departments in result["branches"]:
            print(f"  Branch {name}: {branch_id} departments={departments}")


if __name__ == "__main__":
    main()
