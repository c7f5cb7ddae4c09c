#!/usr/bin/env python3
"""Run every due workflow schedule once and exit.

Usage:
    # Against Postgres:
    DATABASE_URL=postgresql://... python scripts/run_schedules.py

    # Only list what is due:
    python scripts/run_schedules.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: Snapshot directory for the memory store
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_schedules(limit: int | None, dry_run: bool = False) -> list[dict]:
    # Import here so the environment below is in place before settings load
    from stepflow.service.runtime import get_runtime
    from stepflow.storage.models import utcnow

    runtime = get_runtime()
    try:
        if dry_run:
            due = runtime.store.list_due_schedules(
                utcnow(), limit or runtime.settings.schedule_batch_limit
            )
            return [
                {"schedule_id": item.id, "workflow_id": item.workflow_id, "cron": item.cron}
                for item in due
            ]
        return await runtime.schedules.run_due(limit=limit)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run due Stepflow schedules once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum schedules to run")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List due schedules without running them",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        results = asyncio.run(run_schedules(args.limit, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps({"ok": True, "ran": len(results), "results": results}, indent=2))
    if any(item.get("ok") is False for item in results):
        sys.exit(2)


if __name__ == "__main__":
    main()
