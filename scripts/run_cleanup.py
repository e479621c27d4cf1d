#!/usr/bin/env python3
"""Run one retention cleanup in-process, without going through the queue.

Usage:
    # Preview what a 90-day cleanup would delete:
    python scripts/run_cleanup.py --retention-days 90 --dry-run

    # Delete in batches of 200:
    BACKEND_API_URL=https://example.convex.cloud WORKFLOW_CLEANUP_TOKEN=... \
        python scripts/run_cleanup.py --retention-days 30 --batch-size 200

Environment Variables:
    BACKEND_API_URL: Document store HTTP API (uses the memory store if not set)
    WORKFLOW_CLEANUP_TOKEN: Token the document store expects on cleanup actions
    CLEANUP_BATCH_DELAY_SECONDS: Pause between batches (default 1.0)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_cleanup(retention_days: int, batch_size: int, dry_run: bool) -> tuple[int, dict]:
    """Run the cleanup job inline and return ``(http_status, outcome)``."""
    # Import here to avoid loading config before env vars are set
    from chatjobs.jobs.base import JobCredentials
    from chatjobs.service.runtime import get_runtime

    runtime = get_runtime()
    payload = runtime.cleanup_job.parse_payload(
        {"retentionDays": retention_days, "batchSize": batch_size, "dryRun": dry_run}
    )
    try:
        result = await runtime.dispatcher.run_inline(
            runtime.cleanup_job, payload, JobCredentials()
        )
    finally:
        await runtime.close()
    return result.status_code, result.body


def main():
    parser = argparse.ArgumentParser(
        description="Delete soft-deleted chats and messages past retention",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=float,
        default=90,
        help="Delete records soft-deleted more than this many days ago (1-3650)",
    )
    parser.add_argument(
        "--batch-size",
        type=float,
        default=100,
        help="Records per batch (1-1000)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report how many records the first batch would delete",
    )

    args = parser.parse_args()

    if not os.environ.get("BACKEND_API_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set BACKEND_API_URL to clean real data)", file=sys.stderr)
    if not os.environ.get("REDIS_URL"):
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from chatjobs.service.errors import ServiceError

    try:
        status, body = asyncio.run(
            run_cleanup(args.retention_days, args.batch_size, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(2 if e.status_code == 400 else 1)

    print(json.dumps(body, indent=2))
    if status != 200:
        sys.exit(1)


if __name__ == "__main__":
    main()
