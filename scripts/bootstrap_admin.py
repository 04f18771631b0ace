#!/usr/bin/env python3
"""Seed roles and create or promote an administrator.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure-passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure-passphrase'
    python scripts/bootstrap_admin.py --purge-expired

A new admin gets a verified email address and ROLE_USER plus ROLE_ADMIN.
An existing account keeps its password and gains ROLE_ADMIN.

Without DATABASE_URL the memory store under SHARED_FS_ROOT is used, so run
it with the same SHARED_FS_ROOT (and JWT_SECRET, if set) as the server.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create ``email`` as an admin, or add ROLE_ADMIN to the existing account."""
    # settings load on import, after main() has filled in the environment
    from credkeep.service.runtime import get_runtime
    from credkeep.storage.models import Role

    runtime = get_runtime()
    store = runtime.store
    store.ensure_roles()

    user = store.get_user_by_email(email)
    if user is not None and Role.ADMIN in user.roles:
        return {"user_id": user.id, "email": email, "status": "already_admin"}
    if dry_run:
        action = "would_promote" if user else "would_create"
        return {"user_id": user.id if user else None, "email": email, "status": action}
    if user is not None:
        store.set_user_roles(user.id, user.roles | {Role.ADMIN})
        return {"user_id": user.id, "email": email, "status": "promoted"}

    password_hash, algo = runtime.auth._hash_password(password)
    user = store.create_user(
        email, password_hash, algo, first_name="Admin", roles={Role.USER, Role.ADMIN}
    )
    store.mark_email_verified(user.id)
    return {"user_id": user.id, "email": email, "status": "created"}


def purge_expired() -> dict:
    from credkeep.service.runtime import get_runtime

    return get_runtime().auth.purge_expired_tokens()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed roles and create or promote a credkeep administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true", help="report the change without making it")
    parser.add_argument(
        "--purge-expired",
        action="store_true",
        help="delete expired refresh, verification and reset tokens, then exit",
    )
    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    if args.purge_expired:
        print(json.dumps(purge_expired()))
        return 0

    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL and ADMIN_PASSWORD) are required")

    from credkeep.api.schemas import check_password_length, normalize_email

    try:
        email = normalize_email(args.email)
        check_password_length(args.password)
    except ValueError as exc:
        parser.error(str(exc))

    result = bootstrap_admin(email, args.password, args.dry_run)
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
