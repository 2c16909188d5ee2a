#!/usr/bin/env python3
"""Delete expired authorization state from the Postgres store.

Removes pending authorization requests and authorization codes past their
expiry, and tokens that expired or were revoked longer ago than
TOKEN_RETENTION_DAYS. The API process runs the same sweep in the
background; this script is for cron or one-off maintenance.

Usage:
    DATABASE_URL=postgresql://... IDENTITY_JWT_SECRET=... python scripts/sweep_expired.py
    python scripts/sweep_expired.py --loop

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required)
    SWEEP_INTERVAL_SECONDS: Delay between passes with --loop
    TOKEN_RETENTION_DAYS: Days expired/revoked tokens are kept
"""
from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def sweep_once(store, settings) -> dict:
    """Run one sweep pass and return the number of rows removed per kind."""
    from projectflow.service.codes import AuthorizationCodeService
    from projectflow.service.pending import PendingRequestService
    from projectflow.service.tokens import TokenService

    return {
        "pending_requests": PendingRequestService(store, settings).sweep(),
        "authorization_codes": AuthorizationCodeService(store).sweep(),
        "tokens": TokenService(store, settings).sweep(),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Sweep expired OAuth state for ProjectFlow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep sweeping every SWEEP_INTERVAL_SECONDS until interrupted",
    )
    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)
    os.environ["DATABASE_URL"] = args.database_url

    # The sweep never verifies identity tokens; any secret satisfies settings validation
    if not os.environ.get("IDENTITY_JWT_SECRET"):
        import secrets

        os.environ["IDENTITY_JWT_SECRET"] = secrets.token_urlsafe(48)

    from projectflow.config import get_settings
    from projectflow.storage.postgres import PostgresStore

    settings = get_settings()
    try:
        store = PostgresStore(settings.database_url)
    except Exception as e:
        print(f"Error: could not connect to database: {e}")
        sys.exit(1)

    try:
        while True:
            removed = sweep_once(store, settings)
            print(
                "Swept {pending_requests} pending requests, {authorization_codes} codes, "
                "{tokens} tokens".format(**removed)
            )
            if not args.loop:
                break
            time.sleep(settings.sweep_interval_seconds)
    except KeyboardInterrupt:
        print("Interrupted")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
