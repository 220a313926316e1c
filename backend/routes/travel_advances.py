"""
HRMS Approvals - Travel Advances Router

Advances against an approved travel request: eligibility, approval (with a
finance sign-off above the policy threshold) and payout.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid
import logging

from services.approval_engine import (
    ActorContext, ApprovalEngine, ApprovalLevel, EntityType, Forbidden, Role,
    ValidationError, WorkflowOperation, WorkflowStatus,
)
from services.policy_rules import compute_eligible_advance, finance_approval_threshold
from services.security import (
    APPROVER_ROLES, PAYMENT_ROLES, SUBMITTER_ROLES, authorize, get_current_actor, request_meta,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/travel/advances", tags=["travel-advances"])

MODULE = "TRV"
ENTITY = EntityType.TRAVEL_ADVANCE.value

# Advances that still count against a request
OPEN_ADVANCE_STATUSES = [
    WorkflowStatus.PENDING.value,
    WorkflowStatus.LEVEL1_APPROVED.value,
    WorkflowStatus.APPROVED.value,
    WorkflowStatus.PAID.value,
]

store = None
policies = None
employees = None
workflow = None


def set_dependencies(entity_store, policy_provider, employee_directory, workflow_service):
    global store, policies, employees, workflow
    store = entity_store
    policies = policy_provider
    employees = employee_directory
    workflow = workflow_service


# ==================== MODELS ====================

class TravelAdvanceBody(BaseModel):
    travel_request_id: str
    advance_amount: float = Field(..., gt=0)
    purpose: Optional[str] = None


class AdvanceApprovalBody(BaseModel):
    level: str = ApprovalLevel.LEVEL1.value
    comments: Optional[str] = None


class DecisionBody(BaseModel):
    comments: Optional[str] = None


class PaymentBody(BaseModel):
    payment_reference: str = Field(..., min_length=1)
    payment_method: Literal["Salary", "Direct Transfer", "Petty Cash"] = "Salary"


# ==================== ENDPOINTS ====================

@router.get("")
async def list_travel_advances(
    status: Optional[str] = Query(None),
    travel_request_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_current_actor)
):
    query = {}
    if status:
        query["status"] = status
    if travel_request_id:
        query["travel_request_id"] = travel_request_id
    if actor.role == Role.EMPLOYEE.value:
        query["employee_id"] = actor.employee_id

    items, total = await store.find(ENTITY, actor.tenant_id, query, skip, limit)
    return {"success": True, "data": items, "total": total}


@router.get("/{advance_id}")
async def get_travel_advance(advance_id: str, actor: ActorContext = Depends(get_current_actor)):
    advance = await store.get(ENTITY, actor.tenant_id, advance_id)
    if actor.role == Role.EMPLOYEE.value and advance.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only view their own advances")
    return {"success": True, "data": advance}


@router.post("", status_code=201)
async def create_travel_advance(
    body: TravelAdvanceBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    """
    Request an advance. The travel request must be approved and the amount
    may not exceed the eligible advance for the employee's grade.
    """
    travel_request = await store.get(EntityType.TRAVEL_REQUEST.value, actor.tenant_id, body.travel_request_id)
    if actor.role == Role.EMPLOYEE.value and travel_request.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only request advances for their own trips")
    if travel_request.get("status") != WorkflowStatus.APPROVED.value:
        raise ValidationError(
            "Travel request must be approved before requesting an advance",
            {"travel_request_status": travel_request.get("status")},
        )

    existing = await store.find_one(ENTITY, actor.tenant_id, {
        "travel_request_id": body.travel_request_id,
        "status": {"$in": OPEN_ADVANCE_STATUSES},
    })
    if existing:
        raise ValidationError("An advance already exists for this travel request", {"advance_id": existing["id"]})

    employee = await employees.get(actor.tenant_id, travel_request["employee_id"])
    policy = await policies.find_active_policy(actor.tenant_id, employee.get("grade"))
    estimated = travel_request.get("estimated_amount") or 0
    eligible = compute_eligible_advance(estimated, policy)
    if body.advance_amount > eligible:
        raise ValidationError(
            f"Advance amount exceeds eligible amount of {eligible:.2f}",
            {"advance_amount": body.advance_amount, "eligible_advance": eligible},
        )

    now = datetime.now(timezone.utc).isoformat()
    advance = {
        "id": str(uuid.uuid4()),
        "tenant_id": actor.tenant_id,
        "employee_id": travel_request["employee_id"],
        "travel_request_id": body.travel_request_id,
        "estimated_amount": estimated,
        "advance_amount": round(body.advance_amount, 2),
        "eligible_advance": eligible,
        "requires_finance_approval": body.advance_amount >= finance_approval_threshold(policy),
        "purpose": body.purpose,
        "status": WorkflowStatus.PENDING.value,
        "workflow_history": [],
        "created_by": actor.user_id,
        "created_utc": now,
        "updated_utc": now,
    }
    await store.save(ENTITY, advance)
    workflow.audit(actor, "CREATE", ENTITY, advance["id"],
                   f"Requested travel advance of {advance['advance_amount']:.2f}", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "data": advance, "message": "Travel advance requested successfully"}


@router.post("/{advance_id}/approve")
async def approve_travel_advance(
    advance_id: str,
    body: AdvanceApprovalBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*APPROVER_ROLES))
):
    """Level1 approval; advances above the finance threshold then wait for Finance."""
    advance = await store.get(ENTITY, actor.tenant_id, advance_id)
    result = ApprovalEngine.approve(ENTITY, advance, body.level, actor, body.comments)

    if result.to_status == WorkflowStatus.APPROVED.value:
        notification = {
            "to": await employees.email_of(actor.tenant_id, advance["employee_id"]),
            "subject": "Travel Advance Approved",
            "message": f"Your travel advance of {advance['advance_amount']:.2f} has been approved.",
        }
        message = "Travel advance approved successfully"
    else:
        notification = None
        message = "Travel advance approved, pending finance approval"

    updated = await workflow.commit(
        result, actor, MODULE, f"APPROVE_{result.level.upper()}", f"{result.level} approval of travel advance",
        notification=notification, request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": message}


@router.post("/{advance_id}/reject")
async def reject_travel_advance(
    advance_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*APPROVER_ROLES))
):
    advance = await store.get(ENTITY, actor.tenant_id, advance_id)
    result = ApprovalEngine.reject(ENTITY, advance, actor, body.comments)
    updated = await workflow.commit(
        result, actor, MODULE, "REJECT", "Rejected travel advance",
        notification={
            "to": await employees.email_of(actor.tenant_id, advance["employee_id"]),
            "subject": "Travel Advance Rejected",
            "message": f"Your travel advance has been rejected. {body.comments or ''}".strip(),
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel advance rejected"}


@router.post("/{advance_id}/pay")
async def pay_travel_advance(
    advance_id: str,
    body: PaymentBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*PAYMENT_ROLES))
):
    advance = await store.get(ENTITY, actor.tenant_id, advance_id)
    result = ApprovalEngine.transition(
        ENTITY, advance, WorkflowOperation.PAY.value, actor,
        changes={
            "paid_date": datetime.now(timezone.utc).isoformat(),
            "payment_reference": body.payment_reference,
            "payment_method": body.payment_method,
        },
    )
    updated = await workflow.commit(
        result, actor, MODULE, "PAY", f"Paid travel advance via {body.payment_method}",
        notification={
            "to": await employees.email_of(actor.tenant_id, advance["employee_id"]),
            "subject": "Travel Advance Paid",
            "message": f"Your travel advance of {advance['advance_amount']:.2f} has been paid "
                       f"(reference {body.payment_reference}).",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel advance marked as paid"}
