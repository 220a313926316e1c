"""
HRMS Approvals - Routes Package

API routers for the approval workflows and their master data.
"""

from .auth import router as auth_router
from .travel_requests import router as travel_requests_router
from .travel_advances import router as travel_advances_router
from .travel_claims import router as travel_claims_router
from .travel_policies import router as travel_policies_router
from .goals import router as goals_router
from .pips import router as pips_router
from .employees import router as employees_router
from .audit_logs import router as audit_logs_router

__all__ = [
    'auth_router',
    'travel_requests_router',
    'travel_advances_router',
    'travel_claims_router',
    'travel_policies_router',
    'goals_router',
    'pips_router',
    'employees_router',
    'audit_logs_router',
]
