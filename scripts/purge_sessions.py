#!/usr/bin/env python3
"""Run session maintenance once, outside the API process.

Usage:
    # Delete revoked and expired sessions (suitable for cron):
    python scripts/purge_sessions.py

    # Also sign a user out everywhere, e.g. after a credential leak:
    python scripts/purge_sessions.py --revoke-user someone@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless USE_MEMORY_STORE=true)
    JWT_SECRET: Must match the API deployment; settings are validated on load
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_maintenance(revoke_user: str | None = None) -> dict:
    """Purge stale sessions and optionally revoke one user's live sessions.

    Returns:
        dict with ``purged`` and ``revoked`` counts
    """
    # Import here so config is read after env vars are set
    from tokenward.service.runtime import get_runtime

    runtime = get_runtime()
    revoked = 0
    if revoke_user:
        user = runtime.store.get_user_by_email(revoke_user)
        if not user:
            raise LookupError(f"no user with email {revoke_user}")
        revoked = await runtime.sessions.revoke_all(user.id)
        print(f"Revoked {revoked} session(s) for {revoke_user}")

    purged = await runtime.sessions.purge_expired()
    print(f"Purged {purged} stale session(s)")
    return {"purged": purged, "revoked": revoked}


def main():
    parser = argparse.ArgumentParser(
        description="Session maintenance for tokenward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--revoke-user",
        default=os.environ.get("REVOKE_USER_EMAIL"),
        help="Revoke every active session for this email (or set REVOKE_USER_EMAIL)",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: DATABASE_URL is required")
        sys.exit(1)

    try:
        asyncio.run(run_maintenance(args.revoke_user))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
