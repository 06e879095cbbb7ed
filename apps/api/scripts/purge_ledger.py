"""Purge expired capability ledger rows now, or enqueue the job with --enqueue."""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.maintenance_queue import enqueue_ledger_purge_job, purge_expired_ledger_entries


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--enqueue", action="store_true", help="enqueue on the maintenance queue instead of running inline")
    args = parser.parse_args()

    if args.enqueue:
        job = enqueue_ledger_purge_job()
        print(f"📬 Enqueued ledger purge job {job.id}")
        return 0

    purged = asyncio.run(purge_expired_ledger_entries())
    print(f"🧹 Purged {purged} expired ledger rows.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
