"""
HRMS Approvals - Travel Policies Router

Grade-wise travel entitlements. One policy per (tenant, grade); only the
Active one is used for validation, advance eligibility and claim escalation.
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid

from services.approval_engine import ActorContext, NotFound, ValidationError
from services.security import HR_ROLES, authorize, get_current_actor, request_meta

router = APIRouter(prefix="/travel/policies", tags=["travel-policies"])

MODULE = "TRV"
ENTITY = "TRAVEL_POLICY"

# Set by main app
db = None
workflow = None


def set_dependencies(database, workflow_service):
    global db, workflow
    db = database
    workflow = workflow_service


# ==================== MODELS ====================

class ClassEntitlement(BaseModel):
    travel_class: Optional[str] = Field(None, alias="class")
    max_amount: float = Field(0, ge=0)

    model_config = {"populate_by_name": True}


class AirTravel(BaseModel):
    domestic: ClassEntitlement = Field(default_factory=ClassEntitlement)
    international: ClassEntitlement = Field(default_factory=ClassEntitlement)


class DailyAllowanceRates(BaseModel):
    A1: float = Field(0, ge=0)
    A: float = Field(0, ge=0)
    B: float = Field(0, ge=0)
    C: float = Field(0, ge=0)


class HotelEntitlement(BaseModel):
    category: Optional[str] = None
    max_room_rent: float = Field(0, ge=0)


class MileageAllowance(BaseModel):
    two_wheeler: float = Field(0, ge=0)
    four_wheeler: float = Field(0, ge=0)
    max_monthly_km: float = Field(0, ge=0)


class AdvanceLimit(BaseModel):
    percentage: float = Field(80, ge=0, le=100)
    max_amount: float = Field(0, ge=0)
    finance_approval_threshold: float = Field(50000, ge=0)


class TravelPolicyBody(BaseModel):
    grade: str = Field(..., min_length=1)
    name: Optional[str] = None
    status: Literal["Active", "Inactive"] = "Active"
    air_travel: AirTravel = Field(default_factory=AirTravel)
    train_travel: ClassEntitlement = Field(default_factory=ClassEntitlement)
    daily_allowance: DailyAllowanceRates = Field(default_factory=DailyAllowanceRates)
    hotel: HotelEntitlement = Field(default_factory=HotelEntitlement)
    mileage_allowance: MileageAllowance = Field(default_factory=MileageAllowance)
    advance_limit: AdvanceLimit = Field(default_factory=AdvanceLimit)
    claim_submission_deadline: int = Field(30, ge=1)
    escalation_threshold_amount: float = Field(25000, ge=0)


def _policy_fields(body: TravelPolicyBody) -> dict:
    # Stored with the "class" key the rule checks read
    return body.model_dump(by_alias=True)


# ==================== ENDPOINTS ====================

@router.get("")
async def list_travel_policies(
    status: Optional[str] = Query(None),
    actor: ActorContext = Depends(get_current_actor)
):
    query = {"tenant_id": actor.tenant_id}
    if status:
        query["status"] = status
    policies = await db.travel_policies.find(query, {"_id": 0}).sort("grade", 1).to_list(200)
    return {"success": True, "data": policies}


@router.get("/{policy_id}")
async def get_travel_policy(policy_id: str, actor: ActorContext = Depends(get_current_actor)):
    policy = await db.travel_policies.find_one({"id": policy_id, "tenant_id": actor.tenant_id}, {"_id": 0})
    if not policy:
        raise NotFound("Travel policy", policy_id)
    return {"success": True, "data": policy}


@router.post("", status_code=201)
async def create_travel_policy(
    body: TravelPolicyBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    existing = await db.travel_policies.find_one({"tenant_id": actor.tenant_id, "grade": body.grade}, {"_id": 0})
    if existing:
        raise ValidationError(f"Travel policy already exists for grade {body.grade}", {"policy_id": existing["id"]})

    now = datetime.now(timezone.utc).isoformat()
    policy = {
        "id": str(uuid.uuid4()),
        "tenant_id": actor.tenant_id,
        **_policy_fields(body),
        "created_by": actor.user_id,
        "created_utc": now,
        "updated_utc": now,
    }
    await db.travel_policies.insert_one(dict(policy))
    workflow.audit(actor, "CREATE", ENTITY, policy["id"], f"Created travel policy for grade {body.grade}",
                   MODULE, request_meta=request_meta(request))
    return {"success": True, "data": policy, "message": "Travel policy created successfully"}


@router.put("/{policy_id}")
async def update_travel_policy(
    policy_id: str,
    body: TravelPolicyBody,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    policy = await db.travel_policies.find_one({"id": policy_id, "tenant_id": actor.tenant_id}, {"_id": 0})
    if not policy:
        raise NotFound("Travel policy", policy_id)
    if body.grade != policy.get("grade"):
        clash = await db.travel_policies.find_one(
            {"tenant_id": actor.tenant_id, "grade": body.grade, "id": {"$ne": policy_id}}, {"_id": 0}
        )
        if clash:
            raise ValidationError(f"Travel policy already exists for grade {body.grade}", {"policy_id": clash["id"]})

    fields = {**_policy_fields(body), "updated_utc": datetime.now(timezone.utc).isoformat()}
    await db.travel_policies.update_one({"id": policy_id, "tenant_id": actor.tenant_id}, {"$set": fields})
    workflow.audit(actor, "UPDATE", ENTITY, policy_id, f"Updated travel policy for grade {body.grade}",
                   MODULE, changes=fields, request_meta=request_meta(request))
    return {"success": True, "data": {**policy, **fields}, "message": "Travel policy updated successfully"}


@router.delete("/{policy_id}")
async def delete_travel_policy(
    policy_id: str,
    request: Request,
    actor: ActorContext = Depends(authorize(*HR_ROLES))
):
    result = await db.travel_policies.delete_one({"id": policy_id, "tenant_id": actor.tenant_id})
    if result.deleted_count == 0:
        raise NotFound("Travel policy", policy_id)
    workflow.audit(actor, "DELETE", ENTITY, policy_id, "Deleted travel policy", MODULE,
                   request_meta=request_meta(request))
    return {"success": True, "message": "Travel policy deleted successfully"}
