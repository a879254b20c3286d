#!/usr/bin/env python3
"""Run one session maintenance sweep and exit.

Deactivates expired sessions, drops lapsed blacklist rows, prunes inactive
sessions past the retention window and re-probes the blacklist cache.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/sweep_sessions.py
    python scripts/sweep_sessions.py --retention-days 30 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    REDIS_URL: blacklist cache (optional)
    JWT_SECRET: signing secret, required for runtime startup
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(retention_days: int | None, dry_run: bool = False) -> dict:
    """Run the sweep against the configured store.

    Returns:
        dict of counts per maintenance step
    """
    # Import here to avoid loading config before env vars are set
    from wealthvault.service.runtime import get_runtime
    from wealthvault.storage.models import utcnow

    runtime = get_runtime()

    try:
        if dry_run:
            print("[DRY RUN] Checking store and cache only")
            runtime.store.ping()
            return {
                "status": "dry_run",
                "store_reachable": True,
                "cache_healthy": await runtime.blacklist.probe_cache(),
            }

        older_than = utcnow() - timedelta(days=retention_days) if retention_days else None
        result = await runtime.sessions.sweep_expired()
        result["sessions_purged"] = await runtime.sessions.purge_inactive(older_than)
        result["cache_healthy"] = await runtime.blacklist.probe_cache()
        return {"status": "swept", **result}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run one Wealth-Vault session maintenance sweep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Prune inactive sessions older than this (default: SESSION_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Start the runtime and report without making changes",
    )

    args = parser.parse_args()

    if args.retention_days is not None and args.retention_days < 1:
        print("Error: --retention-days must be at least 1")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to sweep PostgreSQL)")

    try:
        result = asyncio.run(sweep(args.retention_days, args.dry_run))
        print(json.dumps(result, indent=2, default=str))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
