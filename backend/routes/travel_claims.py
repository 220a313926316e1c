"""
HRMS Approvals - Travel Claims Router

Expense claims for completed trips. Claims move through Level1, an optional
Level2 (above the grade's escalation threshold), Level3 and Finance before
settlement against any advance that was paid out.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, List, Dict, Literal, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid
import logging

from services.approval_engine import (
    ActorContext, ApprovalEngine, EntityType, Forbidden, NotFound, Role,
    ValidationError, WorkflowError, WorkflowOperation, WorkflowStatus,
)
from services.claim_calculator import compute_net, compute_totals
from services.policy_rules import check_submission_deadline, escalation_threshold, validate_against_policy
from services.security import (
    APPROVER_ROLES, PAYMENT_ROLES, SUBMITTER_ROLES, authorize, get_current_actor, request_meta,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/travel/claims", tags=["travel-claims"])

MODULE = "TRV"
ENTITY = EntityType.TRAVEL_CLAIM.value

# Trip states a claim can be raised against
CLAIMABLE_REQUEST_STATUSES = (WorkflowStatus.APPROVED.value, WorkflowStatus.COMPLETED.value)
# Advance states that count as money already with the employee
LINKABLE_ADVANCE_STATUSES = [WorkflowStatus.APPROVED.value, WorkflowStatus.PAID.value]

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

class TravelExpenseItem(BaseModel):
    date: Optional[str] = None
    mode: Optional[Literal["Flight", "Train", "Bus", "Car", "Other"]] = None
    travel_class: Optional[str] = None
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    amount: float = Field(0, ge=0)
    booking_charges: float = Field(0, ge=0)
    bill_number: Optional[str] = None


class AccommodationItem(BaseModel):
    hotel_name: Optional[str] = None
    city: Optional[str] = None
    check_in: Optional[str] = None
    check_out: Optional[str] = None
    room_rent: float = Field(0, ge=0)
    bill_number: Optional[str] = None


class DailyAllowanceItem(BaseModel):
    date: Optional[str] = None
    city: Optional[str] = None
    city_classification: Optional[Literal["A1", "A", "B", "C"]] = None
    days: float = Field(0, ge=0)
    rate: float = Field(0, ge=0)
    amount: Optional[float] = Field(None, ge=0)


class LocalConveyanceItem(BaseModel):
    date: Optional[str] = None
    mode: Optional[str] = None
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    fare: float = Field(0, ge=0)


class IncidentalExpenseItem(BaseModel):
    date: Optional[str] = None
    description: Optional[str] = None
    amount: float = Field(0, ge=0)


class MileageClaim(BaseModel):
    vehicle_type: Literal["Two-Wheeler", "Four-Wheeler"]
    distance: float = Field(0, ge=0)
    rate_per_km: float = Field(0, ge=0)
    amount: Optional[float] = Field(None, ge=0)


class ClaimLineItems(BaseModel):
    travel_expenses: List[TravelExpenseItem] = Field(default_factory=list)
    accommodation: List[AccommodationItem] = Field(default_factory=list)
    daily_allowance: List[DailyAllowanceItem] = Field(default_factory=list)
    local_conveyance: List[LocalConveyanceItem] = Field(default_factory=list)
    incidental_expenses: List[IncidentalExpenseItem] = Field(default_factory=list)
    mileage_claim: Optional[MileageClaim] = None
    justifications: Dict[str, str] = Field(default_factory=dict)
    remarks: Optional[str] = None


class TravelClaimCreate(ClaimLineItems):
    travel_request_id: str
    claim_type: Literal["Regular Travel", "LTA", "Mileage", "Other Allowance"]


class ApprovalBody(BaseModel):
    level: str
    comments: Optional[str] = None
    approved_amount: Optional[float] = None


class DecisionBody(BaseModel):
    comments: Optional[str] = None


class SettlementBody(BaseModel):
    payment_reference: str = Field(..., min_length=1)
    payment_method: Literal["Salary", "Direct Transfer", "Petty Cash"] = "Direct Transfer"


# ==================== HELPERS ====================

def _check_visibility(claim: Dict[str, Any], actor: ActorContext) -> None:
    if actor.role == Role.EMPLOYEE.value and claim.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only access their own travel claims")


def _amounts(claim: Dict[str, Any]) -> Dict[str, Any]:
    """Totals, approved amount and net position for freshly entered line items."""
    totals = compute_totals(claim)
    fields: Dict[str, Any] = {**totals, "approved_amount": totals["total_amount"]}
    fields.update(compute_net(totals["total_amount"], claim.get("advance_paid")))
    return fields


async def _claim_context(tenant_id: str, claim: Dict[str, Any]):
    """(employee, policy) for the claim owner; either may be None."""
    employee = await employees.find(tenant_id, claim.get("employee_id"))
    policy = await policies.find_active_policy(tenant_id, (employee or {}).get("grade"))
    return employee, policy


# ==================== ENDPOINTS ====================

@router.get("")
async def list_travel_claims(
    status: Optional[str] = Query(None),
    employee_id: Optional[str] = Query(None),
    claim_type: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_current_actor)
):
    query = {}
    if status:
        query["status"] = status
    if claim_type:
        query["claim_type"] = claim_type
    if actor.role == Role.EMPLOYEE.value:
        query["employee_id"] = actor.employee_id
    elif employee_id:
        query["employee_id"] = employee_id

    items, total = await store.find(ENTITY, actor.tenant_id, query, skip, limit)
    return {"success": True, "data": items, "total": total}


@router.get("/{claim_id}")
async def get_travel_claim(claim_id: str, actor: ActorContext = Depends(get_current_actor)):
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    _check_visibility(claim, actor)
    return {"success": True, "data": claim}


@router.post("", status_code=201)
async def create_travel_claim(
    body: TravelClaimCreate,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    """
    Create a draft claim for a trip.

    Fails with DEADLINE_EXCEEDED when more days than the policy allows have
    passed since the trip's return date. A paid or approved advance for the
    trip is linked and offset against the claim.
    """
    travel_request = await store.find_one(
        EntityType.TRAVEL_REQUEST.value, actor.tenant_id, {"id": body.travel_request_id}
    )
    if not travel_request:
        raise NotFound("Travel request", body.travel_request_id)
    _check_visibility(travel_request, actor)
    if travel_request.get("status") not in CLAIMABLE_REQUEST_STATUSES:
        raise ValidationError(
            "Claims can only be raised against approved travel requests",
            {"travel_request_status": travel_request.get("status")},
        )

    employee = await employees.get(actor.tenant_id, travel_request["employee_id"])
    policy = await policies.find_active_policy(actor.tenant_id, employee.get("grade"))
    check_submission_deadline(travel_request.get("return_date"), policy)

    # An advance is offset against one live claim only
    sibling_claims, _ = await store.find(ENTITY, actor.tenant_id, {
        "travel_request_id": body.travel_request_id,
        "status": {"$ne": WorkflowStatus.REJECTED.value},
    }, limit=100)
    held_advance_ids = [c["travel_advance_id"] for c in sibling_claims if c.get("travel_advance_id")]
    advance = await store.find_one(EntityType.TRAVEL_ADVANCE.value, actor.tenant_id, {
        "travel_request_id": body.travel_request_id,
        "status": {"$in": LINKABLE_ADVANCE_STATUSES},
        "id": {"$nin": held_advance_ids},
    })

    now = datetime.now(timezone.utc).isoformat()
    claim = {
        "id": str(uuid.uuid4()),
        "claim_number": f"TC-{uuid.uuid4().hex[:8].upper()}",
        "tenant_id": actor.tenant_id,
        "employee_id": travel_request["employee_id"],
        "travel_request_id": body.travel_request_id,
        "travel_type": travel_request.get("travel_type"),
        **body.model_dump(exclude={"travel_request_id"}),
        "travel_advance_id": advance["id"] if advance else None,
        "advance_paid": round(float(advance.get("advance_amount") or 0), 2) if advance else 0.0,
        "status": WorkflowStatus.DRAFT.value,
        "policy_validated": False,
        "workflow_history": [],
        "created_by": actor.user_id,
        "created_utc": now,
        "updated_utc": now,
    }
    claim.update(_amounts(claim))
    claim["policy_violations"] = validate_against_policy(claim, policy, employee)

    await store.save(ENTITY, claim)
    workflow.audit(actor, "CREATE", ENTITY, claim["id"],
                   f"Created travel claim {claim['claim_number']} for {claim['total_amount']:.2f}", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "data": claim, "message": "Travel claim created successfully"}


@router.put("/{claim_id}")
async def update_travel_claim(
    claim_id: str,
    body: ClaimLineItems,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    """Replace the line items of a draft claim."""
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    _check_visibility(claim, actor)
    ApprovalEngine.ensure_editable(claim)

    employee, policy = await _claim_context(actor.tenant_id, claim)
    fields = body.model_dump()
    draft = {**claim, **fields}
    fields.update(_amounts(draft))
    fields["policy_violations"] = validate_against_policy({**draft, **fields}, policy, employee)
    fields["updated_utc"] = datetime.now(timezone.utc).isoformat()

    updated = await store.compare_and_set(ENTITY, actor.tenant_id, claim_id, WorkflowStatus.DRAFT.value, fields)
    workflow.audit(actor, "UPDATE", ENTITY, claim_id, "Updated travel claim line items", MODULE,
                   changes={"total_amount": fields["total_amount"]}, request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Travel claim updated successfully"}


@router.delete("/{claim_id}")
async def delete_travel_claim(
    claim_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    _check_visibility(claim, actor)
    ApprovalEngine.ensure_deletable(claim)
    await store.delete_one(ENTITY, claim, WorkflowStatus.DRAFT.value)
    workflow.audit(actor, "DELETE", ENTITY, claim_id, "Deleted draft travel claim", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "message": "Travel claim deleted successfully"}


@router.post("/{claim_id}/submit")
async def submit_travel_claim(
    claim_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    employee = await employees.get(actor.tenant_id, claim["employee_id"])
    manager = await employees.manager_of(actor.tenant_id, employee)

    result = ApprovalEngine.submit(ENTITY, claim, actor, employee.get("reporting_manager_id"))
    updated = await workflow.commit(
        result, actor, MODULE, "SUBMIT", f"Submitted travel claim {claim.get('claim_number')}",
        notification={
            "to": manager.get("email") if manager else None,
            "subject": "Travel Claim Pending Approval",
            "message": f"Travel claim {claim.get('claim_number')} for "
                       f"{claim.get('total_amount', 0):.2f} is awaiting your approval.",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel claim submitted successfully"}


@router.post("/{claim_id}/approve")
async def approve_travel_claim(
    claim_id: str,
    body: ApprovalBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*APPROVER_ROLES))
):
    """Approve at Level1, Level2, Level3 or Finance."""
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    employee, policy = await _claim_context(actor.tenant_id, claim)

    result = ApprovalEngine.approve(
        ENTITY, claim, body.level, actor, body.comments,
        approved_amount=body.approved_amount,
        escalation_threshold=escalation_threshold(policy),
    )
    updated = await workflow.commit(
        result, actor, MODULE, f"APPROVE_{result.level.upper()}",
        f"{result.level} approval of travel claim {claim.get('claim_number')}",
        notification={
            "to": (employee or {}).get("email"),
            "subject": f"Travel Claim {result.level} Approved",
            "message": f"Your travel claim {claim.get('claim_number')} has been approved at {result.level} level.",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": f"Travel claim {result.level} approved successfully"}


@router.post("/{claim_id}/reject")
async def reject_travel_claim(
    claim_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*APPROVER_ROLES))
):
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    employee, policy = await _claim_context(actor.tenant_id, claim)

    result = ApprovalEngine.reject(ENTITY, claim, actor, body.comments, escalation_threshold(policy))
    updated = await workflow.commit(
        result, actor, MODULE, "REJECT", f"Rejected travel claim at {result.level}",
        notification={
            "to": (employee or {}).get("email"),
            "subject": "Travel Claim Rejected",
            "message": f"Your travel claim {claim.get('claim_number')} has been rejected. "
                       f"{body.comments or ''}".strip(),
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Travel claim rejected"}


@router.post("/{claim_id}/settle")
async def settle_travel_claim(
    claim_id: str,
    body: SettlementBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*PAYMENT_ROLES))
):
    """
    Settle a finance-approved claim and close out its linked advance.

    The claim write is final once it succeeds; a failure to update the
    advance is logged and reported in the message, not as an error.
    """
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    employee = await employees.find(actor.tenant_id, claim.get("employee_id"))

    result = ApprovalEngine.settle(claim, actor, body.payment_reference, body.payment_method)
    net = {"payable": result.changes["net_payable"], "recoverable": result.changes["net_recoverable"]}
    if net["payable"] > 0:
        position = f"Amount payable: {net['payable']:.2f}"
    elif net["recoverable"] > 0:
        position = f"Amount recoverable: {net['recoverable']:.2f}"
    else:
        position = "No balance due"

    updated = await workflow.commit(
        result, actor, MODULE, "SETTLE", f"Settled travel claim {claim.get('claim_number')}. {position}",
        notification={
            "to": (employee or {}).get("email"),
            "subject": "Travel Claim Settled",
            "message": f"Your travel claim {claim.get('claim_number')} has been settled. {position}",
        },
        request_meta=request_meta(request),
    )

    message = "Travel claim settled successfully"
    if result.advance_update:
        advance_id = claim["travel_advance_id"]
        try:
            advance = await store.get(EntityType.TRAVEL_ADVANCE.value, actor.tenant_id, advance_id)
            advance_result = ApprovalEngine.transition(
                EntityType.TRAVEL_ADVANCE.value, advance, WorkflowOperation.SETTLE.value, actor,
                comments=f"Settled against claim {claim.get('claim_number')}",
                changes={**result.advance_update, "settled_claim_id": claim_id},
            )
            await workflow.commit(
                advance_result, actor, MODULE, "SETTLE", f"Settled advance against claim {claim.get('claim_number')}",
                request_meta=request_meta(request),
            )
        except WorkflowError as e:
            logger.warning("Advance %s not settled for claim %s: %s", advance_id, claim_id, e.message)
            message = f"Travel claim settled; linked advance not updated: {e.message}"

    return {"success": True, "data": updated, "message": message}


@router.post("/{claim_id}/revalidate")
async def revalidate_travel_claim(
    claim_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*APPROVER_ROLES))
):
    """Recompute policy violations against the grade's current policy."""
    claim = await store.get(ENTITY, actor.tenant_id, claim_id)
    ApprovalEngine.ensure_editable(claim, tuple(
        s for s in ApprovalEngine.get_statuses(ENTITY)
        if s not in (WorkflowStatus.SETTLED.value, WorkflowStatus.REJECTED.value)
    ))
    employee, policy = await _claim_context(actor.tenant_id, claim)
    violations = validate_against_policy(claim, policy, employee)

    updated = await store.compare_and_set(
        ENTITY, actor.tenant_id, claim_id, claim["status"],
        {"policy_violations": violations, "policy_checked_utc": datetime.now(timezone.utc).isoformat()},
    )
    workflow.audit(actor, "REVALIDATE", ENTITY, claim_id,
                   f"Revalidated travel claim against policy: {len(violations)} violation(s)", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Policy validation completed"}
