#!/usr/bin/env python3
"""Delete expired and revoked refresh token records.

Usage:
    # Against the database named by DATABASE_URL:
    python scripts/purge_refresh_tokens.py

    # Report how many records would go without deleting anything:
    python scripts/purge_refresh_tokens.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to run against an empty in-memory store
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(dry_run: bool = False) -> dict:
    """Purge the ledger once.

    Returns:
        dict with the number of records ``purged`` (or that ``would_purge``)
    """
    # Import here so the environment is read only after argument parsing
    from sessionvault.config import get_settings
    from sessionvault.service.runtime import build_store
    from sessionvault.storage.models import utcnow

    store = build_store(get_settings())
    now = utcnow()
    try:
        if dry_run:
            return {"would_purge": store.count_purgeable_refresh_tokens(now)}
        return {"purged": store.purge_refresh_tokens(now)}
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired and revoked refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count purgeable records without deleting them",
    )
    args = parser.parse_args(argv)

    from sessionvault.logging import get_logger

    logger = get_logger("sessionvault.scripts.purge")
    try:
        result = purge(dry_run=args.dry_run)
    except Exception as exc:
        logger.error("refresh_token_purge_failed", error=str(exc))
        print(f"Error: {exc}")
        return 1

    if args.dry_run:
        print(f"[DRY RUN] {result['would_purge']} refresh token record(s) would be purged")
    else:
        print(f"Purged {result['purged']} refresh token record(s)")
    logger.info("refresh_token_purge_complete", dry_run=args.dry_run, **result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
