#!/usr/bin/env python3
"""
Apply posrd/db/migrations/*.sql in filename order.

Applied files are recorded in schema_migrations; each file runs in its own
transaction so a failing migration leaves earlier ones committed.
"""
import argparse
import os
import sys
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "db" / "migrations"


def pending_migrations(applied: set, directory: Path = MIGRATIONS_DIR) -> list:
    return [p for p in sorted(directory.glob("*.sql")) if p.name not in applied]


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply SQL migrations.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/posrd",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--dry-run", action="store_true", help="List pending migrations without applying them.")
    args = parser.parse_args()

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                      filename text PRIMARY KEY,
                      applied_at timestamptz NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute("SELECT filename FROM schema_migrations")
                applied = {r["filename"] for r in cur.fetchall()}

        pending = pending_migrations(applied)
        if not pending:
            print("migrate: up to date")
            return 0
        for path in pending:
            if args.dry_run:
                print(f"pending: {path.name}")
                continue
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(path.read_text(encoding="utf-8"))
                        cur.execute("INSERT INTO schema_migrations (filename) VALUES (%s)", (path.name,))
            except psycopg.Error as ex:
                print(f"migrate: {path.name} failed: {ex}", file=sys.stderr)
                return 1
            print(f"applied: {path.name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
