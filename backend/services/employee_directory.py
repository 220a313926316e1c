"""
HRMS Approvals - Employee Directory

Read access to employee master data: grade for policy lookup, reporting
manager for Level1 routing, email for notifications.
"""

from typing import Any, Dict, Optional

from services.approval_engine import NotFound


class EmployeeDirectory:

    def __init__(self, db):
        self.db = db

    async def find(self, tenant_id: str, employee_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not employee_id:
            return None
        return await self.db.employees.find_one({"tenant_id": tenant_id, "id": employee_id}, {"_id": 0})

    async def get(self, tenant_id: str, employee_id: Optional[str]) -> Dict[str, Any]:
        employee = await self.find(tenant_id, employee_id)
        if not employee:
            raise NotFound("Employee", employee_id)
        return employee

    async def manager_of(self, tenant_id: str, employee: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.find(tenant_id, employee.get("reporting_manager_id"))

    async def email_of(self, tenant_id: str, employee_id: Optional[str]) -> Optional[str]:
        employee = await self.find(tenant_id, employee_id)
        return employee.get("email") if employee else None


def full_name(employee: Optional[Dict[str, Any]]) -> str:
    if not employee:
        return ""
    return " ".join(p for p in (employee.get("first_name"), employee.get("last_name")) if p)
