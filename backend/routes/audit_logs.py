"""
HRMS Approvals - Audit Logs Router

Read-only view of the tenant's audit trail.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from services.approval_engine import ActorContext
from services.security import HR_ROLES, authorize

router = APIRouter(prefix="/audit-logs", tags=["audit-logs"])

db = None


def set_db(database):
    global db
    db = database


@router.get("")
async def list_audit_logs(
    module: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    """Newest first. Dates filter on the ISO timestamp."""
    query = {"tenant_id": actor.tenant_id}
    for key, value in (("module", module), ("action", action), ("entity_type", entity_type),
                       ("entity_id", entity_id), ("actor_id", actor_id)):
        if value:
            query[key] = value
    if start_date or end_date:
        query["timestamp"] = {}
        if start_date:
            query["timestamp"]["$gte"] = start_date
        if end_date:
            query["timestamp"]["$lte"] = end_date

    total = await db.audit_logs.count_documents(query)
    logs = await db.audit_logs.find(query, {"_id": 0}).sort("timestamp", -1).skip(skip).limit(limit).to_list(limit)
    return {"success": True, "data": logs, "total": total}
