#!/usr/bin/env python3
"""Out-of-band account administration.

Usage:
    python scripts/manage_user.py create --email user@example.com --password 'Secure-Passw0rd' [--handle name] [--confirmed]
    python scripts/manage_user.py confirm --email user@example.com
    python scripts/manage_user.py lock --email user@example.com
    python scripts/manage_user.py unlock --email user@example.com
    python scripts/manage_user.py status --email user@example.com
    python scripts/manage_user.py sweep

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: Directory for the memory store snapshot
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def _require_user(runtime, email: str):
    from latchkey.service.errors import NotFoundError

    user = runtime.store.get_user_by_email(email)
    if user is None:
        raise NotFoundError(f"no user with email {email}")
    return user


def _describe(user) -> dict:
    def _iso(value):
        return value.isoformat() if value else None

    return {
        "user_id": user.id,
        "email": user.email,
        "handle": user.handle,
        "confirmed_at": _iso(user.confirmed_at),
        "failed_attempts": user.failed_attempts,
        "locked_at": _iso(user.locked_at),
        "sign_in_count": user.sign_in_count,
        "current_sign_in_at": _iso(user.current_sign_in_at),
        "current_sign_in_ip": user.current_sign_in_ip,
        "last_sign_in_at": _iso(user.last_sign_in_at),
        "last_sign_in_ip": user.last_sign_in_ip,
    }


def create_user(runtime, email: str, password: str, *, handle=None, confirmed=False) -> dict:
    from latchkey.storage.models import utcnow

    password_hash, algo = runtime.verifier.hash_password(password)
    user = runtime.store.create_user(
        email,
        handle,
        password_hash=password_hash,
        password_algo=algo,
        confirmed_at=utcnow() if confirmed else None,
    )
    return {"status": "created", **_describe(user)}


def confirm_user(runtime, email: str) -> dict:
    from latchkey.storage.models import utcnow

    user = _require_user(runtime, email)
    if user.confirmed_at is not None:
        return {"status": "already_confirmed", **_describe(user)}
    user = runtime.store.update_user(user.id, {"confirmed_at": utcnow()})
    return {"status": "confirmed", **_describe(user)}


def lock_user(runtime, email: str) -> dict:
    user = runtime.lockout.lock(_require_user(runtime, email))
    # A locked account must not stay signed in through any session or remembered cookie
    runtime.store.revoke_user_sessions(user.id)
    runtime.ledger.invalidate_user(user.id)
    runtime.credential_store.evict_user(user.id)
    return {"status": "locked", **_describe(user)}


def unlock_user(runtime, email: str) -> dict:
    user = runtime.lockout.unlock(_require_user(runtime, email))
    return {"status": "unlocked", **_describe(user)}


def user_status(runtime, email: str) -> dict:
    user = _require_user(runtime, email)
    lineages = runtime.ledger.list_lineages(user.id)
    return {"status": "ok", "remembered_logins": len(lineages), **_describe(user)}


def sweep_tokens(runtime) -> dict:
    return {"status": "swept", "removed": runtime.ledger.sweep_expired()}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage latchkey accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a user")
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        default=os.environ.get("LATCHKEY_PASSWORD"),
        help="Password (or set LATCHKEY_PASSWORD env var)",
    )
    create.add_argument("--handle")
    create.add_argument("--confirmed", action="store_true", help="Mark as confirmed")

    for name, help_text in (
        ("confirm", "Mark a user as confirmed"),
        ("lock", "Lock an account"),
        ("unlock", "Unlock an account and reset its failure counter"),
        ("status", "Show lockout and sign-in state"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--email", required=True)

    sub.add_parser("sweep", help="Delete expired persistent-login tokens")
    return parser


def run(args: argparse.Namespace, runtime) -> dict:
    if args.command == "create":
        return create_user(
            runtime, args.email, args.password, handle=args.handle, confirmed=args.confirmed
        )
    if args.command == "confirm":
        return confirm_user(runtime, args.email)
    if args.command == "lock":
        return lock_user(runtime, args.email)
    if args.command == "unlock":
        return unlock_user(runtime, args.email)
    if args.command == "status":
        return user_status(runtime, args.email)
    return sweep_tokens(runtime)


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.command == "create":
        if not args.password:
            print("Error: --password or LATCHKEY_PASSWORD environment variable required")
            sys.exit(1)
        if not validate_password(args.password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            print("       (uppercase, lowercase, digits, special characters)")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/latchkey-admin"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Import here to avoid loading config before env vars are set
    from latchkey.service.errors import ServiceError
    from latchkey.service.runtime import get_runtime
    from latchkey.storage.errors import ConstraintViolation

    runtime = get_runtime()
    try:
        result = run(args, runtime)
    except (ServiceError, ConstraintViolation) as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    finally:
        runtime.close()
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
