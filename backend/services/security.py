"""
HRMS Approvals - Request Security

Bearer-token authentication into an ActorContext, tenant resolution and
role-based route authorization. Tokens are issued by the identity service;
create_access_token exists for service-to-service calls and tests.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.app_config import JWT_ALGORITHM, JWT_EXPIRY_SECONDS, JWT_SECRET, TRUSTED_PROXIES
from services.approval_engine import ActorContext, Forbidden, Role
from services.request_guards import client_ip

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

TENANT_HEADER = "X-Tenant-Id"

# Route-level role sets; per-level gates live in the approval engine
ADMINS = (Role.TENANT_ADMIN.value, Role.SUPER_ADMIN.value)
HR_ROLES = (Role.HR_ADMIN.value,) + ADMINS
SUBMITTER_ROLES = (Role.EMPLOYEE.value, Role.HR_ADMIN.value) + ADMINS
APPROVER_ROLES = (Role.MANAGER.value, Role.FINANCE_ADMIN.value, Role.HR_ADMIN.value) + ADMINS
MANAGER_ROLES = (Role.MANAGER.value, Role.HR_ADMIN.value) + ADMINS
PAYMENT_ROLES = (Role.FINANCE_ADMIN.value, Role.PAYROLL_ADMIN.value, Role.HR_ADMIN.value) + ADMINS


def create_access_token(
    user_id: str,
    tenant_id: Optional[str],
    role: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    employee_id: Optional[str] = None,
    expires_in: int = JWT_EXPIRY_SECONDS
) -> str:
    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "email": email,
        "name": name,
        "employee_id": employee_id,
        "exp": datetime.now(timezone.utc).timestamp() + expires_in,
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def actor_from_claims(claims: Dict[str, Any], tenant_header: Optional[str] = None) -> ActorContext:
    """
    Build the ActorContext. The tenant comes from the token; a Super Admin
    may act in another tenant through the X-Tenant-Id header.
    """
    role = claims.get("role")
    user_id = claims.get("sub")
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Token is missing subject or role")

    tenant_id = claims.get("tenant_id")
    if role == Role.SUPER_ADMIN.value and tenant_header:
        tenant_id = tenant_header
    if not tenant_id:
        raise HTTPException(status_code=400, detail="Tenant context required")

    return ActorContext(
        tenant_id=tenant_id,
        user_id=user_id,
        role=role,
        email=claims.get("email"),
        name=claims.get("name"),
        employee_id=claims.get("employee_id"),
    )


async def get_current_actor(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> ActorContext:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    claims = decode_token(credentials.credentials)
    actor = actor_from_claims(claims, request.headers.get(TENANT_HEADER))
    request.state.actor = actor
    return actor


def authorize(*roles: str):
    """
    Dependency factory: admit only the given roles.

    Usage:
        async def create(actor: ActorContext = Depends(authorize(Role.HR_ADMIN))): ...
    """
    allowed = {r.value if isinstance(r, Role) else r for r in roles}

    async def dependency(actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
        if allowed and actor.role not in allowed and actor.role != Role.SUPER_ADMIN.value:
            logger.warning("Forbidden: user=%s role=%s needs one of %s", actor.user_id, actor.role, sorted(allowed))
            raise Forbidden(
                f"User role '{actor.role}' is not authorized to access this route",
                {"role": actor.role, "allowed_roles": sorted(allowed)},
            )
        return actor

    return dependency


def request_meta(request: Request) -> Dict[str, Optional[str]]:
    """Client IP and user agent for audit entries."""
    return {
        "ip_address": client_ip(request, TRUSTED_PROXIES),
        "user_agent": request.headers.get("user-agent"),
    }
