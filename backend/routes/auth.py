"""
HRMS Approvals - Auth Router

Identity of the calling user. Login lives in the identity service; this
service only validates the bearer token it issues.
"""

from fastapi import APIRouter, Depends

from services.approval_engine import ActorContext
from services.employee_directory import EmployeeDirectory, full_name
from services.security import get_current_actor

router = APIRouter(prefix="/auth", tags=["auth"])

employees: EmployeeDirectory = None


def set_dependencies(employee_directory):
    global employees
    employees = employee_directory


@router.get("/me")
async def get_me(actor: ActorContext = Depends(get_current_actor)):
    """Current user with their employee record, if linked."""
    employee = await employees.find(actor.tenant_id, actor.employee_id)
    return {
        "success": True,
        "data": {
            **actor.to_dict(),
            "display_name": actor.name or full_name(employee) or actor.email,
            "employee": employee,
        },
    }
