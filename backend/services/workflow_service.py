"""
HRMS Approvals - Workflow Service

Persists engine transitions and queues their side effects. Routers call
ApprovalEngine for the decision and WorkflowService.commit() for the write.
"""

import logging
from typing import Any, Dict, Optional

from services.approval_engine import ActorContext, TransitionResult
from services.audit_service import build_audit_entry
from services.entity_store import EntityStore
from services.outbox import SideEffectOutbox

logger = logging.getLogger(__name__)


class WorkflowService:

    def __init__(self, store: EntityStore, outbox: SideEffectOutbox):
        self.store = store
        self.outbox = outbox

    async def commit(
        self,
        result: TransitionResult,
        actor: ActorContext,
        module: str,
        action: str,
        description: str,
        notification: Optional[Dict[str, Any]] = None,
        request_meta: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Write the transition conditionally on its from_status, then queue the
        audit entry and optional notification. Returns the stored record.
        """
        updated = await self.store.compare_and_set(
            result.entity_type,
            actor.tenant_id,
            result.entity["id"],
            result.from_status,
            result.changes,
            result.history_entry,
        )
        self.audit(actor, action, result.entity_type, updated["id"], description, module,
                   changes=result.changes, request_meta=request_meta)
        if notification:
            self.notify(actor, module=module, action=action, **notification)
        return updated

    def audit(
        self,
        actor: ActorContext,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        description: str,
        module: str,
        changes: Optional[Dict[str, Any]] = None,
        request_meta: Optional[Dict[str, Any]] = None
    ) -> None:
        self.outbox.enqueue_audit(build_audit_entry(
            actor, action, entity_type, entity_id, description, module, changes, request_meta
        ))

    def notify(self, actor: ActorContext, to: Optional[str], subject: str, message: str,
               module: str, action: str) -> None:
        if not to:
            logger.info("No recipient for notification '%s'", subject)
            return
        self.outbox.enqueue_notification({
            "to": to,
            "subject": subject,
            "message": message,
            "tenant_id": actor.tenant_id,
            "actor_id": actor.user_id,
            "module": module,
            "action": action,
        })
