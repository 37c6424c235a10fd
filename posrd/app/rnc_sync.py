"""
DGII RNC registry sync.

The DGII publishes the contributor registry as a ZIP holding one
pipe-separated text file (ISO-8859-1). Columns we keep:

    0 RNC | 1 razón social | 2 nombre comercial | 3 actividad económica | ... | 9 estado

The registry is replaced wholesale on each sync; rows whose RNC is not 9/11
digits are skipped.
"""

import csv
import io
import json
import urllib.error
import urllib.request
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, List, Optional

from .dominican import digits_only, validate_rnc
from .logging_utils import json_log

BATCH_SIZE = 1000
STALE_AFTER = timedelta(hours=24)
SCHEDULE_KEY = "rnc_sync_schedule"

DEFAULT_SCHEDULE = {
    "enabled": False,
    "schedule_time": "02:00",
    "timezone": "America/Santo_Domingo",
    "auto_sync_enabled": False,
    "last_scheduled_run": None,
}

_STATUS_COL = 9


class RncSyncError(Exception):
    pass


def download_rnc_file(url: str, *, timeout: int = 300) -> bytes:
    req = urllib.request.Request(url, method="GET", headers={"User-Agent": "posrd-rnc-sync"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except urllib.error.HTTPError as e:
        raise RncSyncError(f"DGII respondió {e.code}") from e
    except urllib.error.URLError as e:
        raise RncSyncError(f"No se pudo descargar el padrón de RNC: {e.reason}") from e


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def extract_text(raw: bytes) -> str:
    """Return the registry text from a ZIP archive or a plain CSV/TXT upload."""
    if zipfile.is_zipfile(io.BytesIO(raw)):
        with zipfile.ZipFile(io.BytesIO(raw)) as zf:
            names = [n for n in zf.namelist() if n.lower().endswith((".txt", ".csv"))]
            if not names:
                raise RncSyncError("El archivo ZIP no contiene un padrón de RNC")
            return _decode(zf.read(names[0]))
    return _decode(raw)


def _split(line: str) -> List[str]:
    if "|" in line:
        return [c.strip() for c in line.split("|")]
    return [c.strip() for c in next(csv.reader([line]))]


def parse_rnc_records(text: str) -> Iterator[dict]:
    for line in text.splitlines():
        if not line.strip():
            continue
        cols = _split(line)
        rnc = digits_only(cols[0])
        # Header rows and malformed lines fail the RNC format check.
        if not validate_rnc(rnc) or len(cols) < 2 or not cols[1]:
            continue
        status = cols[_STATUS_COL] if len(cols) > _STATUS_COL and cols[_STATUS_COL] else "ACTIVO"
        yield {
            "rnc": rnc,
            "name": cols[1],
            "commercial_name": (cols[2] if len(cols) > 2 else "") or None,
            "category": (cols[3] if len(cols) > 3 else "") or "UNKNOWN",
            "status": status.upper(),
        }


def _batches(records: Iterable[dict], size: int) -> Iterator[List[dict]]:
    batch: List[dict] = []
    for r in records:
        batch.append(r)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def replace_registry(conn, records: Iterable[dict], *, batch_size: int = BATCH_SIZE) -> int:
    """
    Replace `rnc_registry` with `records` in one transaction. Duplicate RNCs in
    the source keep the last occurrence. A source with no valid rows raises
    RncSyncError and rolls back the DELETE, leaving the registry untouched.
    """
    total = 0
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute("DELETE FROM rnc_registry")
            for batch in _batches(records, batch_size):
                cur.executemany(
                    """
                    INSERT INTO rnc_registry (rnc, name, commercial_name, category, status, last_sync)
                    VALUES (%(rnc)s, %(name)s, %(commercial_name)s, %(category)s, %(status)s, now())
                    ON CONFLICT (rnc) DO UPDATE
                    SET name = EXCLUDED.name,
                        commercial_name = EXCLUDED.commercial_name,
                        category = EXCLUDED.category,
                        status = EXCLUDED.status,
                        last_sync = EXCLUDED.last_sync
                    """,
                    batch,
                )
                total += len(batch)
                json_log("info", "rnc.sync.progress", inserted=total)
            if total == 0:
                raise RncSyncError("El archivo no contiene registros de RNC válidos")
    return total


def sync_registry(conn, *, raw: Optional[bytes] = None, url: Optional[str] = None, timeout: int = 300) -> dict:
    started = datetime.now(timezone.utc)
    source = "upload" if raw is not None else url
    if raw is None:
        if not url:
            raise RncSyncError("No hay URL de descarga configurada para el padrón de RNC")
        json_log("info", "rnc.sync.download", url=url)
        raw = download_rnc_file(url, timeout=timeout)
    text = extract_text(raw)
    total = replace_registry(conn, parse_rnc_records(text))
    duration_ms = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
    json_log("info", "rnc.sync.done", records=total, source=source, duration_ms=duration_ms)
    return {"records": total, "source": source, "duration_ms": duration_ms, "synced_at": datetime.now(timezone.utc)}


def registry_status(cur, *, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    cur.execute("SELECT COUNT(*) AS n, MAX(last_sync) AS last_sync FROM rnc_registry")
    row = cur.fetchone()
    last_sync = row["last_sync"]
    return {
        "total_records": int(row["n"] or 0),
        "last_sync": last_sync,
        "is_stale": last_sync is None or (now - last_sync) > STALE_AFTER,
    }


def load_schedule(cur) -> dict:
    cur.execute("SELECT value_json FROM app_settings WHERE key = %s", (SCHEDULE_KEY,))
    row = cur.fetchone()
    out = dict(DEFAULT_SCHEDULE)
    if row and isinstance(row["value_json"], dict):
        out.update({k: v for k, v in row["value_json"].items() if k in DEFAULT_SCHEDULE})
    return out


def save_schedule(cur, schedule: dict) -> dict:
    value = dict(DEFAULT_SCHEDULE)
    value.update({k: v for k, v in schedule.items() if k in DEFAULT_SCHEDULE})
    cur.execute(
        """
        INSERT INTO app_settings (key, value_json, updated_at)
        VALUES (%s, %s::jsonb, now())
        ON CONFLICT (key) DO UPDATE
        SET value_json = EXCLUDED.value_json, updated_at = now()
        """,
        (SCHEDULE_KEY, json.dumps(value, default=str)),
    )
    return value
