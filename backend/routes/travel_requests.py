"""
HRMS Approvals - Travel Requests Router

Trip requests: draft editing, submission to the reporting manager and the
manager's decision.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Dict, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid
import logging

from services.approval_engine import (
    ActorContext, ApprovalEngine, ApprovalLevel, EntityType, Forbidden, Role,
    ValidationError, WorkflowOperation, WorkflowStatus,
)
from services.policy_rules import parse_datetime, validate_against_policy
from services.security import (
    MANAGER_ROLES, SUBMITTER_ROLES, authorize, get_current_actor, request_meta,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/travel/requests", tags=["travel-requests"])

MODULE = "TRV"
ENTITY = EntityType.TRAVEL_REQUEST.value

# Set by main app
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

class TravelRequestBody(BaseModel):
    employee_id: Optional[str] = None
    travel_type: Literal["Domestic", "International"] = "Domestic"
    purpose: str = Field(..., min_length=1)
    departure_date: str
    return_date: str
    origin: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    mode: Literal["Flight", "Train", "Bus", "Car", "Other"] = "Flight"
    travel_class: Optional[str] = None
    estimated_amount: float = Field(0, ge=0)
    estimated_breakdown: Dict[str, float] = Field(default_factory=dict)
    justifications: Dict[str, str] = Field(default_factory=dict)


class DecisionBody(BaseModel):
    comments: Optional[str] = None


# ==================== HELPERS ====================

def _owner_id(body_employee_id: Optional[str], actor: ActorContext) -> str:
    if actor.role == Role.EMPLOYEE.value:
        if body_employee_id and body_employee_id != actor.employee_id:
            raise Forbidden("Employees can only raise requests for themselves")
        return actor.employee_id
    employee_id = body_employee_id or actor.employee_id
    if not employee_id:
        raise ValidationError("employee_id is required")
    return employee_id


async def _request_fields(body: TravelRequestBody, tenant_id: str, employee: Dict) -> Dict:
    departure = parse_datetime(body.departure_date, "departure_date")
    returning = parse_datetime(body.return_date, "return_date")
    if returning < departure:
        raise ValidationError("Return date must be on or after departure date")

    fields = body.model_dump(exclude={"employee_id"})
    policy = await policies.find_active_policy(tenant_id, employee.get("grade"))
    violations = validate_against_policy(fields, policy, employee)
    fields["policy_violations"] = violations
    fields["policy_compliant"] = not violations
    return fields


# ==================== ENDPOINTS ====================

@router.get("")
async def list_travel_requests(
    status: Optional[str] = Query(None),
    employee_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_current_actor)
):
    """List travel requests. Employees only see their own."""
    query = {}
    if status:
        query["status"] = status
    if actor.role == Role.EMPLOYEE.value:
        query["employee_id"] = actor.employee_id
    elif employee_id:
        query["employee_id"] = employee_id

    items, total = await store.find(ENTITY, actor.tenant_id, query, skip, limit)
    return {"success": True, "data": items, "total": total}


@router.get("/{request_id}")
async def get_travel_request(request_id: str, actor: ActorContext = Depends(get_current_actor)):
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    if actor.role == Role.EMPLOYEE.value and travel_request.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only view their own travel requests")
    return {"success": True, "data": travel_request}


@router.post("", status_code=201)
async def create_travel_request(
    body: TravelRequestBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    employee_id = _owner_id(body.employee_id, actor)
    employee = await employees.get(actor.tenant_id, employee_id)
    now = datetime.now(timezone.utc).isoformat()

    travel_request = {
        "id": str(uuid.uuid4()),
        "tenant_id": actor.tenant_id,
        "employee_id": employee_id,
        **(await _request_fields(body, actor.tenant_id, employee)),
        "status": WorkflowStatus.DRAFT.value,
        "workflow_history": [],
        "created_by": actor.user_id,
        "created_utc": now,
        "updated_utc": now,
    }
    await store.save(ENTITY, travel_request)
    workflow.audit(actor, "CREATE", ENTITY, travel_request["id"],
                   f"Created travel request to {body.destination}", MODULE,
                   request_meta=request_meta(request))

    return {"success": True, "data": travel_request, "message": "Travel request created successfully"}


@router.put("/{request_id}")
async def update_travel_request(
    request_id: str,
    body: TravelRequestBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    """Edit a draft request; policy violations are recomputed."""
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    ApprovalEngine.ensure_editable(travel_request)
    if actor.role == Role.EMPLOYEE.value and travel_request.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only edit their own travel requests")

    employee = await employees.get(actor.tenant_id, travel_request["employee_id"])
    fields = await _request_fields(body, actor.tenant_id, employee)
    updated = await store.compare_and_set(
        ENTITY, actor.tenant_id, request_id, WorkflowStatus.DRAFT.value,
        {**fields, "updated_utc": datetime.now(timezone.utc).isoformat()},
    )
    workflow.audit(actor, "UPDATE", ENTITY, request_id, "Updated travel request", MODULE,
                   changes=fields, request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Travel request updated successfully"}


@router.delete("/{request_id}")
async def delete_travel_request(
    request_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    ApprovalEngine.ensure_deletable(travel_request)
    if actor.role == Role.EMPLOYEE.value and travel_request.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only delete their own travel requests")

    await store.delete_one(ENTITY, travel_request, WorkflowStatus.DRAFT.value)
    workflow.audit(actor, "DELETE", ENTITY, request_id, "Deleted draft travel request", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "message": "Travel request deleted successfully"}


@router.post("/{request_id}/submit")
async def submit_travel_request(
    request_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    employee = await employees.get(actor.tenant_id, travel_request["employee_id"])
    manager = await employees.manager_of(actor.tenant_id, employee)

    result = ApprovalEngine.submit(ENTITY, travel_request, actor, employee.get("reporting_manager_id"))
    updated = await workflow.commit(
        result, actor, MODULE, "SUBMIT", "Submitted travel request for approval",
        notification={
            "to": manager.get("email") if manager else None,
            "subject": "Travel Request Pending Approval",
            "message": f"A travel request to {travel_request.get('destination')} is awaiting your approval.",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel request submitted successfully"}


@router.post("/{request_id}/approve")
async def approve_travel_request(
    request_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*MANAGER_ROLES))
):
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    result = ApprovalEngine.approve(ENTITY, travel_request, ApprovalLevel.LEVEL1.value, actor, body.comments)
    updated = await workflow.commit(
        result, actor, MODULE, "APPROVE", "Approved travel request",
        notification={
            "to": await employees.email_of(actor.tenant_id, travel_request["employee_id"]),
            "subject": "Travel Request Approved",
            "message": f"Your travel request to {travel_request.get('destination')} has been approved.",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel request approved successfully"}


@router.post("/{request_id}/reject")
async def reject_travel_request(
    request_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*MANAGER_ROLES))
):
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    result = ApprovalEngine.reject(ENTITY, travel_request, actor, body.comments)
    updated = await workflow.commit(
        result, actor, MODULE, "REJECT", "Rejected travel request",
        notification={
            "to": await employees.email_of(actor.tenant_id, travel_request["employee_id"]),
            "subject": "Travel Request Rejected",
            "message": f"Your travel request has been rejected. {body.comments or ''}".strip(),
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel request rejected"}


@router.post("/{request_id}/cancel")
async def cancel_travel_request(
    request_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    result = ApprovalEngine.transition(
        ENTITY, travel_request, WorkflowOperation.CANCEL.value, actor, body.comments,
        changes={"cancelled_date": datetime.now(timezone.utc).isoformat(), "cancellation_reason": body.comments},
    )
    updated = await workflow.commit(result, actor, MODULE, "CANCEL", "Cancelled travel request",
                                    request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Travel request cancelled"}


@router.post("/{request_id}/complete")
async def complete_travel_request(
    request_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    """Mark an approved trip as taken."""
    travel_request = await store.get(ENTITY, actor.tenant_id, request_id)
    if actor.role == Role.EMPLOYEE.value and travel_request.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only complete their own travel requests")
    result = ApprovalEngine.transition(
        ENTITY, travel_request, WorkflowOperation.COMPLETE.value, actor, body.comments,
        changes={"completed_date": datetime.now(timezone.utc).isoformat()},
    )
    updated = await workflow.commit(result, actor, MODULE, "COMPLETE", "Completed travel request",
                                    request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Travel request completed"}
