#!/usr/bin/env python3
"""Provision a verified venue account for local testing and initial setup.

Usage:
    # Using environment variables:
    VENUE_EMAIL=owner@example.com VENUE_PASSWORD=Secret123 VENUE_PHONE=01012345678 \
        python scripts/bootstrap_venue.py --name "Arena One"

    # Or with command line args:
    python scripts/bootstrap_venue.py --email owner@example.com --password Secret123 \
        --phone 01012345678 --name "Arena One" --type football_court

The account is created with both email and phone marked verified, so it can
log in through /v1/auth/venue/login immediately and create its first admin.

Environment Variables:
    VENUE_EMAIL, VENUE_PASSWORD, VENUE_PHONE: account credentials
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import re
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

VENUE_TYPES = ("playstation", "football_court", "padel_court", "multi_purpose")


def validate_password(password: str) -> bool:
    """Same rule as venue registration: 6+ chars with upper, lower and a digit."""
    return (
        len(password) >= 6
        and any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
    )


def bootstrap_venue(
    email: str,
    password: str,
    phone: str,
    name: str,
    venue_type: str,
    dry_run: bool = False,
) -> dict:
    """Create a venue and its verified owner account.

    Returns:
        dict with user_id, venue_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from venueauth.service.auth import format_phone, hash_password
    from venueauth.service.runtime import get_runtime
    from venueauth.storage.models import VerificationChannel

    runtime = get_runtime()
    store = runtime.store

    existing = store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {
            "user_id": existing.id,
            "venue_id": existing.venue_id,
            "email": email,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create venue '{name}' owned by {email}")
        return {"user_id": None, "venue_id": None, "email": email, "status": "dry_run"}

    digest, algo = hash_password(password)
    with store.transaction():
        venue = store.create_venue(name, venue_type, email=email)
        user = store.create_user(email, phone_number=format_phone(phone), venue_id=venue.id)
        store.save_password(user.id, digest, algo)
        store.mark_verified(user.id, VerificationChannel.EMAIL)
        store.mark_verified(user.id, VerificationChannel.PHONE)

    print(f"Created venue '{name}' (id: {venue.id}) owned by {email} (id: {user.id})")
    return {"user_id": user.id, "venue_id": venue.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified venue account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("VENUE_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("VENUE_PASSWORD"))
    parser.add_argument("--phone", default=os.environ.get("VENUE_PHONE"))
    parser.add_argument("--name", default=os.environ.get("VENUE_NAME", "Demo Venue"))
    parser.add_argument("--type", dest="venue_type", choices=VENUE_TYPES, default="playstation")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email or not args.password or not args.phone:
        print("Error: --email, --password and --phone (or VENUE_* env vars) are required")
        sys.exit(1)

    if not re.fullmatch(r"01[0125]\d{8}", args.phone):
        print("Error: phone must be an 11-digit local number such as 01012345678")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be 6+ characters with uppercase, lowercase and a digit")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/venueauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_venue(
            args.email.strip().lower(),
            args.password,
            args.phone,
            args.name,
            args.venue_type,
            args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nVenue account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Venue ID: {result['venue_id']}")


if __name__ == "__main__":
    main()
