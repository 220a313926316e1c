"""
HRMS Approvals - Audit Sink

Append-only audit trail in the 'audit_logs' collection.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    WARNING = "Warning"


AUDIT_FIELDS = (
    "tenant_id", "actor_id", "actor_name", "actor_email", "actor_role",
    "action", "module", "entity_type", "entity_id", "description", "changes",
    "ip_address", "user_agent",
)


class AuditSink:

    def __init__(self, db):
        self.db = db

    async def record(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """
        Persist one audit entry. Raises on storage failure so the caller (the
        side-effect outbox) can retry.
        """
        if not entry.get("tenant_id") or not entry.get("action"):
            raise ValueError("Audit entry needs tenant_id and action")

        record = {field: entry.get(field) for field in AUDIT_FIELDS}
        record["id"] = str(uuid.uuid4())
        record["status"] = entry.get("status") or AuditStatus.SUCCESS.value
        record["timestamp"] = entry.get("timestamp") or datetime.now(timezone.utc).isoformat()

        await self.db.audit_logs.insert_one(dict(record))
        logger.debug("Audit recorded: %s %s/%s", record["action"], record["entity_type"], record["entity_id"])
        return record


def build_audit_entry(
    actor,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    description: str,
    module: str,
    changes: Optional[Dict[str, Any]] = None,
    request_meta: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Audit payload for an action taken by an ActorContext."""
    meta = request_meta or {}
    return {
        "tenant_id": actor.tenant_id,
        "actor_id": actor.user_id,
        "actor_name": actor.name,
        "actor_email": actor.email,
        "actor_role": actor.role,
        "action": action,
        "module": module,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "description": description,
        "changes": changes or {},
        "ip_address": meta.get("ip_address"),
        "user_agent": meta.get("user_agent"),
    }
