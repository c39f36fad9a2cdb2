#!/usr/bin/env python3
"""
Offline queue maintenance.

Synced orders are kept in the kiosk's queue so staff can see recent sync
history; this job prunes the ones older than the retention window so the local
store stays bounded. Pending and failed orders are never touched.
"""

import argparse
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

try:
    from ..app.config import settings
    from ..app.logs import json_log
    from ..app.offline_queue import QueueStore
    from ..app.storage import KeyValueStore, SqliteKeyValueStore
except ImportError:  # pragma: no cover
    # Allow running as a script: `python3 kiosk/workers/queue_maintenance.py`
    import os
    import sys

    sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))
    from kiosk.app.config import settings
    from kiosk.app.logs import json_log
    from kiosk.app.offline_queue import QueueStore
    from kiosk.app.storage import KeyValueStore, SqliteKeyValueStore


async def prune_synced_orders(
    kv: KeyValueStore,
    retention_hours: int,
    theater_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    store = QueueStore(kv)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=max(0, int(retention_hours)))
    theater_ids = [theater_id] if theater_id else await store.theater_ids()
    pruned: dict[str, int] = {}
    for tid in theater_ids:
        count = await store.prune_synced(tid, cutoff)
        pruned[tid] = count
        json_log("info", "queue_maintenance.pruned", theater_id=tid, pruned=count, cutoff=cutoff)
    return pruned


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_path, help="Offline queue SQLite path")
    parser.add_argument("--theater-id", default="", help="Only prune this theater (default: all)")
    parser.add_argument("--retention-hours", type=int, default=settings.synced_retention_hours)
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=3600.0, help="Seconds to sleep between loops")
    args = parser.parse_args()

    kv = SqliteKeyValueStore(args.db)
    theater_id = (args.theater_id or "").strip() or None
    while True:
        try:
            asyncio.run(prune_synced_orders(kv, args.retention_hours, theater_id))
        except Exception as ex:
            json_log("error", "queue_maintenance.error", error=str(ex))
            if not args.loop:
                raise
        if not args.loop:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
