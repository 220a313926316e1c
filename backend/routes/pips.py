"""
HRMS Approvals - Performance Improvement Plans Router

PIPs are proposed by the reporting manager (or HR), approved by HR and then
acknowledged by the employee.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone, timedelta
from pydantic import BaseModel, Field
import uuid

from services.approval_engine import (
    ActorContext, ApprovalEngine, ApprovalLevel, EntityType, Forbidden, Role,
    ValidationError, WorkflowOperation, WorkflowStatus,
)
from services.policy_rules import parse_datetime
from services.security import HR_ROLES, MANAGER_ROLES, SUBMITTER_ROLES, authorize, get_current_actor, request_meta

router = APIRouter(prefix="/pips", tags=["pips"])

MODULE = "AMS"
ENTITY = EntityType.PIP.value

MILESTONE_INTERVAL_DAYS = 30

store = None
employees = None
workflow = None


def set_dependencies(entity_store, employee_directory, workflow_service):
    global store, employees, workflow
    store = entity_store
    employees = employee_directory
    workflow = workflow_service


class PIPBody(BaseModel):
    employee_id: str
    appraisal_cycle_id: Optional[str] = None
    performance_gaps: List[str] = Field(..., min_length=1)
    improvement_goals: List[str] = Field(default_factory=list)
    action_plan: List[str] = Field(default_factory=list)
    start_date: Optional[str] = None
    end_date: str


class DecisionBody(BaseModel):
    comments: Optional[str] = None


def review_milestones(start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """A review every 30 days from start, up to and including end."""
    milestones = []
    milestone = start + timedelta(days=MILESTONE_INTERVAL_DAYS)
    while milestone <= end:
        milestones.append({"milestone_date": milestone.isoformat(), "status": "Scheduled"})
        milestone += timedelta(days=MILESTONE_INTERVAL_DAYS)
    return milestones


@router.get("")
async def list_pips(
    employee_id: Optional[str] = Query(None),
    manager_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_current_actor)
):
    """Employees see their own PIPs, managers the ones they proposed."""
    query = {}
    if status:
        query["status"] = status
    if employee_id:
        query["employee_id"] = employee_id
    if manager_id:
        query["manager_id"] = manager_id
    if actor.role == Role.EMPLOYEE.value:
        query["employee_id"] = actor.employee_id
    elif actor.role == Role.MANAGER.value and not manager_id:
        query["manager_id"] = actor.user_id

    items, total = await store.find(ENTITY, actor.tenant_id, query, skip, limit)
    return {"success": True, "data": items, "total": total}


@router.get("/{pip_id}")
async def get_pip(pip_id: str, actor: ActorContext = Depends(get_current_actor)):
    pip = await store.get(ENTITY, actor.tenant_id, pip_id)
    if actor.role == Role.EMPLOYEE.value and pip.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only view their own PIPs")
    return {"success": True, "data": pip}


@router.post("", status_code=201)
async def create_pip(
    body: PIPBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*MANAGER_ROLES))
):
    employee = await employees.get(actor.tenant_id, body.employee_id)
    is_manager = actor.employee_id and employee.get("reporting_manager_id") == actor.employee_id
    if not is_manager and actor.role not in HR_ROLES:
        raise Forbidden("You are not authorized to create a PIP for this employee")

    start = parse_datetime(body.start_date, "start_date") if body.start_date else datetime.now(timezone.utc)
    end = parse_datetime(body.end_date, "end_date")
    if end <= start:
        raise ValidationError("End date must be after start date")

    now = datetime.now(timezone.utc).isoformat()
    pip = {
        "id": str(uuid.uuid4()),
        "tenant_id": actor.tenant_id,
        **body.model_dump(exclude={"start_date", "end_date"}),
        "manager_id": actor.user_id,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "review_milestones": review_milestones(start, end),
        "status": WorkflowStatus.PROPOSED.value,
        "proposed_date": now,
        "workflow_history": [],
        "created_by": actor.user_id,
        "created_utc": now,
        "updated_utc": now,
    }
    await store.save(ENTITY, pip)
    workflow.audit(actor, "CREATE", ENTITY, pip["id"], "Created PIP for employee", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "data": pip, "message": "PIP created successfully"}


@router.post("/{pip_id}/approve")
async def approve_pip(
    pip_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    pip = await store.get(ENTITY, actor.tenant_id, pip_id)
    result = ApprovalEngine.approve(ENTITY, pip, ApprovalLevel.LEVEL1.value, actor, body.comments)
    result.changes["hr_approver_id"] = actor.user_id
    result.changes["hr_approved_date"] = result.changes["level1_approved_date"]
    updated = await workflow.commit(
        result, actor, MODULE, "APPROVE", "Approved PIP",
        notification={
            "to": await employees.email_of(actor.tenant_id, pip["employee_id"]),
            "subject": "Performance Improvement Plan (PIP) Initiated",
            "message": "A Performance Improvement Plan has been initiated for you. Please review and acknowledge.",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "PIP approved successfully"}


@router.post("/{pip_id}/reject")
async def reject_pip(
    pip_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    pip = await store.get(ENTITY, actor.tenant_id, pip_id)
    result = ApprovalEngine.reject(ENTITY, pip, actor, body.comments)
    updated = await workflow.commit(result, actor, MODULE, "REJECT", "Rejected PIP",
                                    request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "PIP rejected"}


@router.post("/{pip_id}/acknowledge")
async def acknowledge_pip(
    pip_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*SUBMITTER_ROLES))
):
    pip = await store.get(ENTITY, actor.tenant_id, pip_id)
    result = ApprovalEngine.transition(
        ENTITY, pip, WorkflowOperation.ACKNOWLEDGE.value, actor, body.comments,
        changes={
            "employee_comments": body.comments,
            "employee_acknowledged_date": datetime.now(timezone.utc).isoformat(),
        },
    )
    updated = await workflow.commit(result, actor, MODULE, "ACKNOWLEDGE", "Employee acknowledged PIP",
                                    request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "PIP acknowledged"}
