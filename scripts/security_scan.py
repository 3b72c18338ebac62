#!/usr/bin/env python3
"""Run the suspicious-login scan once, outside the app process.

Usage:
    python scripts/security_scan.py
    python scripts/security_scan.py --lookback-hours 48 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    REDIS_URL: Redis used for alert de-duplication
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_scan(dry_run: bool = False) -> list:
    # Import here to avoid loading config before env vars are set
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    monitor = runtime.security_monitor
    try:
        if dry_run:
            return monitor.evaluate()
        return await monitor.scan()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Scan recent login history for suspicious activity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--lookback-hours",
        type=int,
        default=None,
        help="Hours of login history to inspect (default: SECURITY_LOOKBACK_HOURS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report alerts without sending notifications",
    )
    args = parser.parse_args()

    if args.lookback_hours is not None:
        if args.lookback_hours <= 0:
            print("Error: --lookback-hours must be positive")
            sys.exit(1)
        os.environ["SECURITY_LOOKBACK_HOURS"] = str(args.lookback_hours)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to scan real history)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        alerts = asyncio.run(run_scan(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not alerts:
        print("No suspicious activity found.")
        return
    for alert in alerts:
        marker = "notified" if alert.notified else ("dry run" if args.dry_run else "suppressed")
        print(
            f"{alert.principal}: {', '.join(alert.reasons)} "
            f"(locations={len(alert.locations)}, failures={alert.failures}) [{marker}]"
        )


if __name__ == "__main__":
    main()
