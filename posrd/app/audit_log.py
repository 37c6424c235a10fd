import json
from typing import Any, Optional


def record_audit(
    cur,
    user: Optional[dict],
    action: str,
    entity_type: str,
    entity_id: Any = None,
    *,
    old_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
) -> None:
    """
    Append an audit row on the caller's cursor so it commits (or rolls back)
    with the change it describes.
    """
    user = user or {}
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id,
                                old_value, new_value, ip_address, user_agent)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s)
        """,
        (
            user.get("user_id"),
            action,
            entity_type,
            str(entity_id) if entity_id is not None else None,
            json.dumps(old_value, default=str) if old_value is not None else None,
            json.dumps(new_value, default=str) if new_value is not None else None,
            user.get("ip_address"),
            user.get("user_agent"),
        ),
    )
