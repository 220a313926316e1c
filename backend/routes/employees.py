"""
HRMS Approvals - Employees Router

Employee master data used for routing approvals (reporting manager), policy
lookup (grade) and notifications (email).
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import re
import uuid

from services.approval_engine import ActorContext, Forbidden, NotFound, Role, ValidationError
from services.security import HR_ROLES, authorize, get_current_actor, request_meta

router = APIRouter(prefix="/employees", tags=["employees"])

MODULE = "EMP"
ENTITY = "EMPLOYEE"

db = None
workflow = None


def set_dependencies(database, workflow_service):
    global db, workflow
    db = database
    workflow = workflow_service


class EmployeeBody(BaseModel):
    employee_code: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: Optional[str] = None
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    grade: Optional[str] = None
    designation: Optional[str] = None
    department_id: Optional[str] = None
    reporting_manager_id: Optional[str] = None
    status: Literal["Active", "Inactive", "Terminated"] = "Active"


async def _check_manager(tenant_id: str, manager_id: Optional[str], employee_id: Optional[str] = None):
    if not manager_id:
        return
    if manager_id == employee_id:
        raise ValidationError("An employee cannot report to themselves")
    manager = await db.employees.find_one({"tenant_id": tenant_id, "id": manager_id}, {"_id": 0})
    if not manager:
        raise NotFound("Reporting manager", manager_id)


@router.get("")
async def list_employees(
    search: Optional[str] = Query(None),
    grade: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    reporting_manager_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_current_actor)
):
    query = {"tenant_id": actor.tenant_id}
    if actor.role == Role.EMPLOYEE.value:
        query["id"] = actor.employee_id
    if grade:
        query["grade"] = grade
    if status:
        query["status"] = status
    if reporting_manager_id:
        query["reporting_manager_id"] = reporting_manager_id
    if search:
        query["first_name"] = {"$regex": re.escape(search), "$options": "i"}

    total = await db.employees.count_documents(query)
    employees = await db.employees.find(query, {"_id": 0}).sort("employee_code", 1).skip(skip).limit(limit).to_list(limit)
    return {"success": True, "data": employees, "total": total}


@router.get("/{employee_id}")
async def get_employee(employee_id: str, actor: ActorContext = Depends(get_current_actor)):
    if actor.role == Role.EMPLOYEE.value and employee_id != actor.employee_id:
        raise Forbidden("Employees can only view their own record")
    employee = await db.employees.find_one({"id": employee_id, "tenant_id": actor.tenant_id}, {"_id": 0})
    if not employee:
        raise NotFound("Employee", employee_id)
    return {"success": True, "data": employee}


@router.post("", status_code=201)
async def create_employee(
    body: EmployeeBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    existing = await db.employees.find_one(
        {"tenant_id": actor.tenant_id, "employee_code": body.employee_code}, {"_id": 0}
    )
    if existing:
        raise ValidationError(f"Employee code {body.employee_code} is already in use")
    await _check_manager(actor.tenant_id, body.reporting_manager_id)

    now = datetime.now(timezone.utc).isoformat()
    employee = {
        "id": str(uuid.uuid4()),
        "tenant_id": actor.tenant_id,
        **body.model_dump(),
        "created_utc": now,
        "updated_utc": now,
    }
    await db.employees.insert_one(dict(employee))
    workflow.audit(actor, "CREATE", ENTITY, employee["id"], f"Created employee {body.employee_code}", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "data": employee, "message": "Employee created successfully"}


@router.put("/{employee_id}")
async def update_employee(
    employee_id: str,
    body: EmployeeBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    employee = await db.employees.find_one({"id": employee_id, "tenant_id": actor.tenant_id}, {"_id": 0})
    if not employee:
        raise NotFound("Employee", employee_id)
    await _check_manager(actor.tenant_id, body.reporting_manager_id, employee_id)

    fields = {**body.model_dump(), "updated_utc": datetime.now(timezone.utc).isoformat()}
    await db.employees.update_one({"id": employee_id, "tenant_id": actor.tenant_id}, {"$set": fields})
    workflow.audit(actor, "UPDATE", ENTITY, employee_id, f"Updated employee {body.employee_code}", MODULE,
                   changes=fields, request_meta=request_meta(request))
    return {"success": True, "data": {**employee, **fields}, "message": "Employee updated successfully"}
