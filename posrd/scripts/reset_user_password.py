#!/usr/bin/env python3
import argparse
import os
import sys

import psycopg
from psycopg.rows import dict_row

from posrd.app.security import hash_password

MIN_PASSWORD_LENGTH = 8


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset a user's password (admin/maintenance).")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/posrd",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--login", required=True, help="Username or email.")
    parser.add_argument("--password", required=True)
    args = parser.parse_args()

    login = (args.login or "").strip().lower()
    if not login:
        print("login is required", file=sys.stderr)
        return 2
    if len(args.password or "") < MIN_PASSWORD_LENGTH:
        print(f"password must have at least {MIN_PASSWORD_LENGTH} characters", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users
                    SET hashed_password = %s,
                        is_active = true,
                        updated_at = now()
                    WHERE lower(username) = %s OR lower(email) = %s
                    RETURNING id
                    """,
                    (hash_password(args.password), login, login),
                )
                row = cur.fetchone()
                if not row:
                    print(f"user not found: {login}", file=sys.stderr)
                    return 2
                # Old tokens must not survive a password reset.
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (row["id"],))

    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
