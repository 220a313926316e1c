"""
HRMS Approvals - Entity Store

Tenant-scoped access to the approvable record collections in MongoDB.
Every query carries tenant_id; Mongo's _id never leaves this module.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from services.approval_engine import EntityType, InvalidTransition, NotFound, WorkflowHistoryEntry

logger = logging.getLogger(__name__)


COLLECTIONS = {
    EntityType.TRAVEL_CLAIM.value: "travel_claims",
    EntityType.TRAVEL_REQUEST.value: "travel_requests",
    EntityType.TRAVEL_ADVANCE.value: "travel_advances",
    EntityType.GOAL.value: "goals",
    EntityType.PIP.value: "pips",
}

# Human readable names used in NotFound messages
ENTITY_LABELS = {
    EntityType.TRAVEL_CLAIM.value: "Travel claim",
    EntityType.TRAVEL_REQUEST.value: "Travel request",
    EntityType.TRAVEL_ADVANCE.value: "Travel advance",
    EntityType.GOAL.value: "Goal",
    EntityType.PIP.value: "PIP",
}

NO_ID = {"_id": 0}


def _type_key(entity_type: Any) -> str:
    return entity_type.value if isinstance(entity_type, EntityType) else entity_type


class EntityStore:
    """
    Thin wrapper over the Motor database.

    compare_and_set() is the only write path for workflow transitions: the
    update is filtered on the status the caller read, so a concurrent
    transition by another approver makes it match nothing.
    """

    def __init__(self, db):
        self.db = db

    def collection(self, entity_type: Any):
        return self.db[COLLECTIONS[_type_key(entity_type)]]

    async def find_one(self, entity_type: Any, tenant_id: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.collection(entity_type).find_one({**query, "tenant_id": tenant_id}, NO_ID)

    async def get(self, entity_type: Any, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        """find_one by id, raising NotFound."""
        entity = await self.find_one(entity_type, tenant_id, {"id": entity_id})
        if not entity:
            raise NotFound(ENTITY_LABELS[_type_key(entity_type)], entity_id)
        return entity

    async def find(
        self,
        entity_type: Any,
        tenant_id: str,
        query: Optional[Dict[str, Any]] = None,
        skip: int = 0,
        limit: int = 50,
        sort: Sequence[Tuple[str, int]] = (("created_utc", -1),)
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return (page, total) for a tenant-scoped query."""
        query = {**(query or {}), "tenant_id": tenant_id}
        coll = self.collection(entity_type)
        total = await coll.count_documents(query)
        cursor = coll.find(query, NO_ID).sort(list(sort)).skip(skip).limit(limit)
        return await cursor.to_list(limit), total

    async def save(self, entity_type: Any, entity: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert by (tenant_id, id)."""
        entity.pop("_id", None)
        await self.collection(entity_type).update_one(
            {"id": entity["id"], "tenant_id": entity["tenant_id"]},
            {"$set": entity},
            upsert=True,
        )
        return entity

    async def compare_and_set(
        self,
        entity_type: Any,
        tenant_id: str,
        entity_id: str,
        expected_status: Union[str, Sequence[str]],
        changes: Dict[str, Any],
        history_entry: Optional[WorkflowHistoryEntry] = None
    ) -> Dict[str, Any]:
        """
        Apply changes only if the record still has expected_status.

        Raises InvalidTransition when the record moved on in the meantime.
        """
        if isinstance(expected_status, str):
            status_filter: Any = expected_status
        else:
            status_filter = {"$in": list(expected_status)}

        update: Dict[str, Any] = {"$set": changes}
        if history_entry is not None:
            update["$push"] = {"workflow_history": history_entry.to_dict()}

        result = await self.collection(entity_type).update_one(
            {"id": entity_id, "tenant_id": tenant_id, "status": status_filter},
            update,
        )
        if result.matched_count == 0:
            current = await self.find_one(entity_type, tenant_id, {"id": entity_id})
            if current is None:
                raise NotFound(ENTITY_LABELS[_type_key(entity_type)], entity_id)
            logger.warning(
                "Concurrent modification: type=%s, id=%s, expected=%s, actual=%s",
                _type_key(entity_type), entity_id, expected_status, current.get("status")
            )
            raise InvalidTransition(
                "Record was modified by another request; reload and retry",
                {"expected_status": expected_status, "status": current.get("status")},
            )
        return await self.get(entity_type, tenant_id, entity_id)

    async def delete_one(self, entity_type: Any, entity: Dict[str, Any], expected_status: str) -> None:
        result = await self.collection(entity_type).delete_one({
            "id": entity["id"],
            "tenant_id": entity["tenant_id"],
            "status": expected_status,
        })
        if result.deleted_count == 0:
            raise InvalidTransition(
                "Record was modified by another request; reload and retry",
                {"expected_status": expected_status},
            )
