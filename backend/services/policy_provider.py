"""
HRMS Approvals - Policy Provider

Looks up the active travel policy for a tenant and grade.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class PolicyProvider:

    def __init__(self, db):
        self.db = db

    async def find_active_policy(self, tenant_id: str, grade: Optional[str]) -> Optional[Dict[str, Any]]:
        if not grade:
            return None
        policy = await self.db.travel_policies.find_one(
            {"tenant_id": tenant_id, "grade": grade, "status": "Active"},
            {"_id": 0}
        )
        if policy is None:
            logger.info("No active travel policy: tenant=%s, grade=%s", tenant_id, grade)
        return policy
