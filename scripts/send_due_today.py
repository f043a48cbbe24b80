#!/usr/bin/env python3
"""Send "bill due today" reminder emails once and exit.

Meant for cron, e.g. every five minutes:

    */5 * * * * cd /srv/coris && python scripts/send_due_today.py

Reads the same environment as the API (DATABASE_URL, SMTP_*, REMINDER_BATCH_SIZE).
Re-running is safe: a reminder is only recorded as sent once.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_once(batch_size: int | None = None) -> dict:
    # Import here so settings are read after argument parsing
    from coris.config import get_settings
    from coris.service.email import EmailService
    from coris.service.reminders import DueTodayReminderJob
    from coris.storage.memory import MemoryStore
    from coris.storage.postgres import PostgresStore, StoredFunctions

    settings = get_settings()
    store = (
        MemoryStore()
        if settings.use_memory_store
        else PostgresStore(
            settings.database_url, functions=StoredFunctions.from_settings(settings)
        )
    )
    try:
        job = DueTodayReminderJob(
            store,
            EmailService.from_settings(settings),
            batch_size=batch_size or settings.reminder_batch_size,
        )
        stats = await job.run()
    finally:
        store.close()
    return {
        "fetched": stats.fetched,
        "sent": stats.sent,
        "skipped": stats.skipped,
        "failed": stats.failed,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Send due-today bill reminders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum reminders to process (default: REMINDER_BATCH_SIZE)",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(run_once(args.batch_size))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(
        "done sent={sent} skipped={skipped} failed={failed}".format(**result)
    )


if __name__ == "__main__":
    main()
