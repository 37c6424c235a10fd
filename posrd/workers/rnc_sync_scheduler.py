#!/usr/bin/env python3
"""
RNC registry sync scheduler.

Runs the DGII registry download once per local day, at or after the
configured `schedule_time`, while the `rnc_sync_schedule` app setting is
enabled. The last run is stored back on the schedule so restarts do not
trigger a second sync the same day.
"""

import argparse
import json
import os
import sys
import time
import traceback
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import psycopg
from psycopg.rows import dict_row

from posrd.app.config import settings
from posrd.app.logging_utils import json_log
from posrd.app.rnc_sync import RncSyncError, load_schedule, save_schedule, sync_registry

DB_URL_DEFAULT = os.getenv("DATABASE_URL") or "postgresql://localhost/posrd"


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.rnc_sync_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("America/Santo_Domingo")


def _parse_run(raw) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


def is_due(schedule: dict, now: datetime) -> bool:
    """
    `now` is timezone-aware. Due when enabled, the local clock has passed
    schedule_time today, and no scheduled run happened yet today.
    """
    if not schedule.get("enabled"):
        return False
    tz = _zone(schedule.get("timezone"))
    local = now.astimezone(tz)
    hh, mm = (int(p) for p in str(schedule.get("schedule_time") or "02:00").split(":", 1))
    if (local.hour, local.minute) < (hh, mm):
        return False
    last = _parse_run(schedule.get("last_scheduled_run"))
    if last is None:
        return True
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return last.astimezone(tz).date() < local.date()


def run_scheduled_sync(db_url: str, *, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            schedule = load_schedule(cur)
        conn.commit()
        if not is_due(schedule, now):
            return False

        # Mark the run first so a failing download is not retried in a tight loop.
        with conn.transaction():
            with conn.cursor() as cur:
                save_schedule(cur, {**schedule, "last_scheduled_run": now.isoformat()})

        json_log("info", "rnc.sync.scheduled_start", schedule_time=schedule.get("schedule_time"))
        try:
            result = sync_registry(conn, url=settings.dgii_rnc_url, timeout=settings.dgii_rnc_timeout_seconds)
        except RncSyncError as ex:
            json_log("error", "rnc.sync.scheduled_failed", error=str(ex))
            return True
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, new_value)
                    VALUES (gen_random_uuid(), NULL, 'RNC_SYNC', 'RncRegistry', 'scheduled', %s::jsonb)
                    """,
                    (json.dumps({"records": result["records"], "source": "scheduled"}),),
                )
    return True


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--sleep", type=float, default=60.0)
    parser.add_argument("--once", action="store_true", help="Run a single check and exit")
    args = parser.parse_args()

    while True:
        try:
            run_scheduled_sync(args.db)
        except Exception as ex:
            # Never crash the scheduler loop; the next tick retries.
            json_log("error", "worker.rnc_sync.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if args.once:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
