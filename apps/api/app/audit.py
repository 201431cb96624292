from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

MAX_AUDIT_ENTRIES = 10_000

# Oldest entries are dropped once the buffer is full.
audit_entries: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def record(
    actor: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    *,
    company_id: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Append a before/after snapshot of a mutation and return the stored entry."""
    entry = {
        "id": str(uuid.uuid4()),
        "actor": actor,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "company_id": company_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id]


def entries_for_company(company_id: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["company_id"] == company_id]
