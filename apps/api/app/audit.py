from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

logger = logging.getLogger("app.audit")

# In-process audit trail for admin lifecycle actions; tests inspect and clear it directly.
audit_entries: list[dict[str, Any]] = []

_SECRET_KEYS = frozenset({"credential", "temporary_credential", "password"})


def _scrub(snapshot: dict[str, Any] | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    return {key: ("[redacted]" if key in _SECRET_KEYS else value) for key, value in snapshot.items()}


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    before_snapshot = _scrub(before)
    after_snapshot = _scrub(after)
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before_snapshot,
        "after": after_snapshot,
        "changed": changed_fields(before_snapshot, after_snapshot),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.debug("audit.recorded", extra={"event_name": f"{entity_type}.{action}", "user_id": actor_user_id})
    return entry


def entries_for(entity_type: str, entity_id: str | None = None, action: str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type
        and (entity_id is None or entry["entity_id"] == entity_id)
        and (action is None or entry["action"] == action)
    ]
