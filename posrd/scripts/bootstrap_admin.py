#!/usr/bin/env python3
import os
import sys

import psycopg
from psycopg.rows import dict_row

from posrd.app.security import generate_temp_password, hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@posrd.local").strip().lower()
    if not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_EMAIL is empty", file=sys.stderr)
        return 2
    username = os.getenv("BOOTSTRAP_ADMIN_USERNAME", "admin").strip().lower() or "admin"

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = generate_temp_password(16)
        generated_password = True

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE role = 'ADMIN' OR email = %s OR username = %s LIMIT 1", (email, username))
                if cur.fetchone():
                    # Idempotent: an admin (or this account) already exists.
                    return 0

                cur.execute(
                    """
                    INSERT INTO users (id, username, email, hashed_password, first_name, last_name, role, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 'ADMIN', true)
                    RETURNING id
                    """,
                    (
                        username,
                        email,
                        hash_password(password),
                        os.getenv("BOOTSTRAP_ADMIN_FIRST_NAME", "Administrador").strip() or "Administrador",
                        os.getenv("BOOTSTRAP_ADMIN_LAST_NAME", "Sistema").strip() or "Sistema",
                    ),
                )
                user_id = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, new_value)
                    VALUES (gen_random_uuid(), %s, 'CREATE', 'User', %s, %s::jsonb)
                    """,
                    (user_id, str(user_id), '{"source": "bootstrap_admin"}'),
                )

    print("BOOTSTRAP_ADMIN_CREATED")
    print(f"username: {username}")
    print(f"email: {email}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_ADMIN_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
