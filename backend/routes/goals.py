"""
HRMS Approvals - Goals Router

Employee goals for an appraisal cycle. Goals are approved by the reporting
manager; changing the description of an approved goal sends it back for
re-approval as Modified.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Literal, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid
import logging

from services.approval_engine import (
    ActorContext, ApprovalEngine, ApprovalLevel, EntityType, Forbidden, Role,
    ValidationError, WorkflowOperation, WorkflowStatus,
)
from services.security import MANAGER_ROLES, authorize, get_current_actor, request_meta

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/goals", tags=["goals"])

MODULE = "AMS"
ENTITY = EntityType.GOAL.value

GOAL_ROLES = (Role.EMPLOYEE.value,) + MANAGER_ROLES

# Goals that no longer count towards the cycle's weightage
INACTIVE_STATUSES = [WorkflowStatus.REJECTED.value, WorkflowStatus.CANCELLED.value]

EDITABLE_STATUSES = (
    WorkflowStatus.DRAFT.value,
    WorkflowStatus.MODIFIED.value,
    WorkflowStatus.APPROVED.value,
    WorkflowStatus.IN_PROGRESS.value,
)

MAX_TOTAL_WEIGHTAGE = 100

store = None
employees = None
workflow = None


def set_dependencies(entity_store, employee_directory, workflow_service):
    global store, employees, workflow
    store = entity_store
    employees = employee_directory
    workflow = workflow_service


# ==================== MODELS ====================

class GoalBody(BaseModel):
    employee_id: Optional[str] = None
    appraisal_cycle_id: str = Field(..., min_length=1)
    goal_level: Literal["Organization", "Department", "Individual"] = "Individual"
    parent_goal_id: Optional[str] = None
    description: str = Field(..., min_length=1)
    kpi: Optional[str] = None
    target: Optional[str] = None
    weightage: float = Field(0, ge=0, le=100)
    timeline: Optional[str] = None
    category: Optional[str] = None


class GoalUpdateBody(BaseModel):
    description: Optional[str] = Field(None, min_length=1)
    kpi: Optional[str] = None
    target: Optional[str] = None
    weightage: Optional[float] = Field(None, ge=0, le=100)
    timeline: Optional[str] = None
    category: Optional[str] = None
    modification_reason: Optional[str] = None


class DecisionBody(BaseModel):
    comments: Optional[str] = None


class ProgressBody(BaseModel):
    progress: float = Field(..., ge=0, le=100)
    current_value: Optional[str] = None


# ==================== HELPERS ====================

def _check_access(goal: Dict[str, Any], actor: ActorContext) -> None:
    if actor.role == Role.EMPLOYEE.value and goal.get("employee_id") != actor.employee_id:
        raise Forbidden("Employees can only access their own goals")


async def _check_weightage(tenant_id: str, employee_id: str, cycle_id: str, weightage: float,
                           exclude_id: Optional[str] = None) -> None:
    """Total weightage of the employee's active goals in the cycle may not exceed 100."""
    query: Dict[str, Any] = {
        "employee_id": employee_id,
        "appraisal_cycle_id": cycle_id,
        "status": {"$nin": INACTIVE_STATUSES},
    }
    if exclude_id:
        query["id"] = {"$ne": exclude_id}
    goals, _ = await store.find(ENTITY, tenant_id, query, 0, 1000)
    current = sum(float(g.get("weightage") or 0) for g in goals)
    if current + weightage > MAX_TOTAL_WEIGHTAGE:
        raise ValidationError(
            f"Total weightage cannot exceed {MAX_TOTAL_WEIGHTAGE}%. Current: {current:g}%, Adding: {weightage:g}%",
            {"current_weightage": current, "weightage": weightage},
        )


# ==================== ENDPOINTS ====================

@router.get("")
async def list_goals(
    employee_id: Optional[str] = Query(None),
    appraisal_cycle_id: Optional[str] = Query(None),
    goal_level: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_current_actor)
):
    query = {}
    if appraisal_cycle_id:
        query["appraisal_cycle_id"] = appraisal_cycle_id
    if goal_level:
        query["goal_level"] = goal_level
    if status:
        query["status"] = status
    if actor.role == Role.EMPLOYEE.value:
        query["employee_id"] = actor.employee_id
    elif employee_id:
        query["employee_id"] = employee_id

    items, total = await store.find(ENTITY, actor.tenant_id, query, skip, limit)
    return {"success": True, "data": items, "total": total}


@router.get("/{goal_id}")
async def get_goal(goal_id: str, actor: ActorContext = Depends(get_current_actor)):
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    _check_access(goal, actor)
    return {"success": True, "data": goal}


@router.post("", status_code=201)
async def create_goal(
    body: GoalBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*GOAL_ROLES))
):
    if actor.role == Role.EMPLOYEE.value:
        if body.employee_id and body.employee_id != actor.employee_id:
            raise Forbidden("Employees can only create their own goals")
        employee_id = actor.employee_id
    else:
        employee_id = body.employee_id or actor.employee_id
    employee = await employees.get(actor.tenant_id, employee_id)

    if body.weightage:
        await _check_weightage(actor.tenant_id, employee_id, body.appraisal_cycle_id, body.weightage)

    now = datetime.now(timezone.utc).isoformat()
    goal = {
        "id": str(uuid.uuid4()),
        "tenant_id": actor.tenant_id,
        **body.model_dump(exclude={"employee_id"}),
        "employee_id": employee_id,
        "department_id": employee.get("department_id"),
        "progress": 0,
        "current_value": None,
        "was_modified": False,
        "status": WorkflowStatus.DRAFT.value,
        "workflow_history": [],
        "created_by": actor.user_id,
        "created_utc": now,
        "updated_utc": now,
    }
    await store.save(ENTITY, goal)
    workflow.audit(actor, "CREATE", ENTITY, goal["id"], f"Created goal: {body.description}", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "data": goal, "message": "Goal created successfully"}


@router.put("/{goal_id}")
async def update_goal(
    goal_id: str,
    body: GoalUpdateBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*GOAL_ROLES))
):
    """
    Edit a goal. A new description on an Approved or In Progress goal moves
    it to Modified, which needs manager approval again.
    """
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    _check_access(goal, actor)
    ApprovalEngine.ensure_editable(goal, EDITABLE_STATUSES)

    fields = body.model_dump(exclude_none=True, exclude={"modification_reason"})
    if "weightage" in fields:
        await _check_weightage(actor.tenant_id, goal["employee_id"], goal["appraisal_cycle_id"],
                               fields["weightage"], exclude_id=goal_id)

    description_changed = "description" in fields and fields["description"] != goal.get("description")
    if description_changed and goal["status"] in (WorkflowStatus.APPROVED.value, WorkflowStatus.IN_PROGRESS.value):
        reason = body.modification_reason or "Goal modification requested"
        result = ApprovalEngine.transition(
            ENTITY, goal, WorkflowOperation.MODIFY.value, actor, reason,
            changes={**fields, "was_modified": True, "modification_reason": reason},
        )
        manager = await employees.manager_of(actor.tenant_id, await employees.get(actor.tenant_id, goal["employee_id"]))
        updated = await workflow.commit(
            result, actor, MODULE, "MODIFY", f"Modified goal: {fields['description']}",
            notification={
                "to": manager.get("email") if manager else None,
                "subject": "Goal Modification Pending Approval",
                "message": f"A modified goal is awaiting your approval: {fields['description']}",
            },
            request_meta=request_meta(request),
        )
        return {"success": True, "data": updated, "message": "Goal modified, pending re-approval"}

    fields["updated_utc"] = datetime.now(timezone.utc).isoformat()
    updated = await store.compare_and_set(ENTITY, actor.tenant_id, goal_id, goal["status"], fields)
    workflow.audit(actor, "UPDATE", ENTITY, goal_id, f"Updated goal: {updated.get('description')}", MODULE,
                   changes=fields, request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Goal updated successfully"}


@router.delete("/{goal_id}")
async def delete_goal(
    goal_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*GOAL_ROLES))
):
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    _check_access(goal, actor)
    ApprovalEngine.ensure_deletable(goal)
    await store.delete_one(ENTITY, goal, WorkflowStatus.DRAFT.value)
    workflow.audit(actor, "DELETE", ENTITY, goal_id, "Deleted draft goal", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "message": "Goal deleted successfully"}


@router.post("/{goal_id}/submit")
async def submit_goal(
    goal_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*GOAL_ROLES))
):
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    employee = await employees.get(actor.tenant_id, goal["employee_id"])
    manager = await employees.manager_of(actor.tenant_id, employee)

    result = ApprovalEngine.submit(ENTITY, goal, actor, employee.get("reporting_manager_id"))
    updated = await workflow.commit(
        result, actor, MODULE, "SUBMIT", f"Submitted goal: {goal.get('description')}",
        notification={
            "to": manager.get("email") if manager else None,
            "subject": "Goal Pending Approval",
            "message": f"A goal is awaiting your approval: {goal.get('description')}",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Goal submitted for approval"}


@router.post("/{goal_id}/approve")
async def approve_goal(
    goal_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*MANAGER_ROLES))
):
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    result = ApprovalEngine.approve(ENTITY, goal, ApprovalLevel.LEVEL1.value, actor, body.comments)
    updated = await workflow.commit(
        result, actor, MODULE, "APPROVE", f"Approved goal: {goal.get('description')}",
        notification={
            "to": await employees.email_of(actor.tenant_id, goal["employee_id"]),
            "subject": "Goal Approved",
            "message": f"Your goal has been approved: {goal.get('description')}",
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Goal approved successfully"}


@router.post("/{goal_id}/reject")
async def reject_goal(
    goal_id: str,
    body: DecisionBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*MANAGER_ROLES))
):
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    result = ApprovalEngine.reject(ENTITY, goal, actor, body.comments)
    updated = await workflow.commit(
        result, actor, MODULE, "REJECT", f"Rejected goal: {goal.get('description')}",
        notification={
            "to": await employees.email_of(actor.tenant_id, goal["employee_id"]),
            "subject": "Goal Rejected",
            "message": f"Your goal has been rejected. {body.comments or ''}".strip(),
        },
        request_meta=request_meta(request),
    )
    return {"success": True, "data": updated, "message": "Goal rejected"}


@router.put("/{goal_id}/progress")
async def update_goal_progress(
    goal_id: str,
    body: ProgressBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*GOAL_ROLES))
):
    """
    Record progress on an approved goal. The first progress update starts
    the goal; reaching 100 completes it.
    """
    goal = await store.get(ENTITY, actor.tenant_id, goal_id)
    _check_access(goal, actor)
    ApprovalEngine.ensure_editable(goal, (WorkflowStatus.APPROVED.value, WorkflowStatus.IN_PROGRESS.value))

    fields: Dict[str, Any] = {"progress": body.progress}
    if body.current_value is not None:
        fields["current_value"] = body.current_value
    description = f"Updated goal progress: {body.progress:g}%"

    if body.progress >= 100:
        fields["completed_date"] = datetime.now(timezone.utc).isoformat()
        result = ApprovalEngine.transition(ENTITY, goal, WorkflowOperation.COMPLETE.value, actor, changes=fields)
    elif goal["status"] == WorkflowStatus.APPROVED.value and body.progress > 0:
        result = ApprovalEngine.transition(ENTITY, goal, WorkflowOperation.START.value, actor, changes=fields)
    else:
        fields["updated_utc"] = datetime.now(timezone.utc).isoformat()
        updated = await store.compare_and_set(ENTITY, actor.tenant_id, goal_id, goal["status"], fields)
        workflow.audit(actor, "UPDATE_PROGRESS", ENTITY, goal_id, description, MODULE,
                       changes=fields, request_meta=request_meta(request))
        return {"success": True, "data": updated, "message": "Goal progress updated"}

    updated = await workflow.commit(result, actor, MODULE, "UPDATE_PROGRESS", description,
                                    request_meta=request_meta(request))
    return {"success": True, "data": updated, "message": "Goal progress updated"}
