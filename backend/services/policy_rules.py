"""
HRMS Approvals - Travel Policy Rules

Pure checks of travel requests and claims against a grade's travel policy.
Violations are advisory: they are recorded on the record but never block a
workflow transition. The submission deadline is the one hard rule here.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from services.app_config import (
    DEFAULT_ADVANCE_PERCENTAGE,
    DEFAULT_CLAIM_SUBMISSION_DEADLINE_DAYS,
    DEFAULT_ESCALATION_THRESHOLD,
    DEFAULT_FINANCE_APPROVAL_THRESHOLD,
)
from services.approval_engine import DeadlineExceeded, ValidationError


# Lowest to highest entitlement
AIR_CLASS_ORDER = ["Economy", "Business", "First"]
TRAIN_CLASS_ORDER = ["General", "Sleeper", "AC-III", "AC-II", "AC-I"]

CITY_CLASSIFICATIONS = ("A1", "A", "B", "C")

VEHICLE_RATE_FIELDS = {
    "Two-Wheeler": "two_wheeler",
    "Four-Wheeler": "four_wheeler",
}


def parse_datetime(value: Any, field_name: str = "date") -> datetime:
    """Parse an ISO date/datetime (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value:
            raise ValidationError(f"{field_name} is required", {"field": field_name})
        try:
            parsed = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            raise ValidationError(f"Invalid {field_name}: {value}", {"field": field_name})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _section(policy: Optional[Dict[str, Any]], *path: str) -> Dict[str, Any]:
    node: Any = policy or {}
    for key in path:
        node = node.get(key) if isinstance(node, dict) else None
        if node is None:
            return {}
    return node if isinstance(node, dict) else {}


def _class_exceeds(requested: Optional[str], entitled: Optional[str], order: List[str]) -> bool:
    if not requested or not entitled:
        return False
    if requested not in order or entitled not in order:
        return False
    return order.index(requested) > order.index(entitled)


# =============================================================================
# POLICY PARAMETERS
# =============================================================================

def escalation_threshold(policy: Optional[Dict[str, Any]]) -> float:
    value = (policy or {}).get("escalation_threshold_amount")
    return DEFAULT_ESCALATION_THRESHOLD if value in (None, "") else float(value)


def submission_deadline_days(policy: Optional[Dict[str, Any]]) -> int:
    value = (policy or {}).get("claim_submission_deadline")
    return DEFAULT_CLAIM_SUBMISSION_DEADLINE_DAYS if not value else int(value)


def finance_approval_threshold(policy: Optional[Dict[str, Any]]) -> float:
    value = _section(policy, "advance_limit").get("finance_approval_threshold")
    return DEFAULT_FINANCE_APPROVAL_THRESHOLD if value in (None, "") else float(value)


def compute_eligible_advance(estimated_amount: Any, policy: Optional[Dict[str, Any]]) -> float:
    """
    Advance an employee may draw for a trip.

    percentage of the estimate, capped by advance_limit.max_amount when that
    cap is positive. Without a policy the default percentage applies.
    """
    estimated = _num(estimated_amount)
    if not policy:
        return round(estimated * DEFAULT_ADVANCE_PERCENTAGE / 100, 2)

    limit = _section(policy, "advance_limit")
    percentage = limit.get("percentage")
    percentage = DEFAULT_ADVANCE_PERCENTAGE if percentage in (None, "") else _num(percentage)
    eligible = estimated * percentage / 100
    max_amount = _num(limit.get("max_amount"))
    if max_amount > 0:
        eligible = min(eligible, max_amount)
    return round(eligible, 2)


# =============================================================================
# SUBMISSION DEADLINE
# =============================================================================

def days_since(value: Any, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since value (floor)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    elapsed = now - parse_datetime(value, "return_date")
    return math.floor(elapsed.total_seconds() / 86400)


def check_submission_deadline(
    return_date: Any,
    policy: Optional[Dict[str, Any]],
    now: Optional[datetime] = None
) -> int:
    """
    Raise DeadlineExceeded when more whole days than the policy deadline have
    passed since the trip ended. Exactly at the deadline is still accepted.

    Returns the number of elapsed days.
    """
    elapsed = days_since(return_date, now)
    deadline = submission_deadline_days(policy)
    if elapsed > deadline:
        raise DeadlineExceeded(
            f"Claim submission deadline exceeded. Claims must be submitted within "
            f"{deadline} days of travel completion",
            {"days_since_travel": elapsed, "deadline_days": deadline},
        )
    return elapsed


# =============================================================================
# VIOLATION CHECKS
# =============================================================================

def _violation(field: str, violation: str, justifications: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "field": field,
        "violation": violation,
        "justification": justifications.get(field),
    }


def _travel_class_violations(
    field: str,
    mode: Optional[str],
    travel_class: Optional[str],
    amount: float,
    travel_type: Optional[str],
    policy: Dict[str, Any],
    grade: str,
    justifications: Dict[str, Any]
) -> List[Dict[str, Any]]:
    violations = []
    if mode == "Flight":
        scope = "international" if travel_type == "International" else "domestic"
        entitlement = _section(policy, "air_travel", scope)
        order = AIR_CLASS_ORDER
    elif mode == "Train":
        entitlement = _section(policy, "train_travel")
        order = TRAIN_CLASS_ORDER
    else:
        return violations

    if _class_exceeds(travel_class, entitlement.get("class"), order):
        violations.append(_violation(
            f"{field}.travel_class",
            f"{travel_class} exceeds {entitlement.get('class')} entitlement for grade {grade}",
            justifications,
        ))
    max_amount = _num(entitlement.get("max_amount"))
    if max_amount > 0 and amount > max_amount:
        violations.append(_violation(
            f"{field}.amount",
            f"Fare {amount:.2f} exceeds limit {max_amount:.2f}",
            justifications,
        ))
    return violations


def _request_violations(request: Dict[str, Any], policy: Dict[str, Any], grade: str,
                        justifications: Dict[str, Any]) -> List[Dict[str, Any]]:
    violations = []
    estimated = _num(request.get("estimated_amount"))
    max_advance = _num(_section(policy, "advance_limit").get("max_amount"))
    if max_advance > 0 and estimated > max_advance:
        violations.append(_violation(
            "estimated_amount",
            f"Estimated amount {estimated:.2f} exceeds limit {max_advance:.2f}",
            justifications,
        ))
    violations.extend(_travel_class_violations(
        "mode", request.get("mode"), request.get("travel_class"), 0.0,
        request.get("travel_type"), policy, grade, justifications,
    ))
    return violations


def _claim_violations(claim: Dict[str, Any], policy: Dict[str, Any], grade: str,
                      justifications: Dict[str, Any]) -> List[Dict[str, Any]]:
    violations = []
    travel_type = claim.get("travel_type")

    for i, item in enumerate(claim.get("travel_expenses") or []):
        violations.extend(_travel_class_violations(
            f"travel_expenses[{i}]", item.get("mode"), item.get("travel_class"),
            _num(item.get("amount")), travel_type, policy, grade, justifications,
        ))

    max_rent = _num(_section(policy, "hotel").get("max_room_rent"))
    for i, item in enumerate(claim.get("accommodation") or []):
        rent = _num(item.get("room_rent"))
        if max_rent > 0 and rent > max_rent:
            violations.append(_violation(
                f"accommodation[{i}].room_rent",
                f"Room rent {rent:.2f} exceeds limit {max_rent:.2f}",
                justifications,
            ))

    da_rates = _section(policy, "daily_allowance")
    for i, item in enumerate(claim.get("daily_allowance") or []):
        city = item.get("city_classification")
        allowed = _num(da_rates.get(city)) if city in CITY_CLASSIFICATIONS else 0.0
        rate = _num(item.get("rate"))
        if allowed > 0 and rate > allowed:
            violations.append(_violation(
                f"daily_allowance[{i}].rate",
                f"Daily allowance {rate:.2f} exceeds {city} city rate {allowed:.2f}",
                justifications,
            ))

    mileage = claim.get("mileage_claim") or {}
    if mileage:
        rates = _section(policy, "mileage_allowance")
        rate_field = VEHICLE_RATE_FIELDS.get(mileage.get("vehicle_type"))
        allowed_rate = _num(rates.get(rate_field)) if rate_field else 0.0
        rate = _num(mileage.get("rate_per_km"))
        if allowed_rate > 0 and rate > allowed_rate:
            violations.append(_violation(
                "mileage_claim.rate_per_km",
                f"Rate {rate:.2f}/km exceeds {mileage.get('vehicle_type')} rate {allowed_rate:.2f}/km",
                justifications,
            ))
        max_km = _num(rates.get("max_monthly_km"))
        distance = _num(mileage.get("distance"))
        if max_km > 0 and distance > max_km:
            violations.append(_violation(
                "mileage_claim.distance",
                f"Distance {distance:.0f} km exceeds monthly limit {max_km:.0f} km",
                justifications,
            ))
    return violations


def validate_against_policy(
    entity: Dict[str, Any],
    policy: Optional[Dict[str, Any]],
    employee: Optional[Dict[str, Any]] = None
) -> List[Dict[str, Any]]:
    """
    Compare a travel request or claim against the grade policy.

    Pure and deterministic: the same entity and policy always yield the same
    list, in line-item order. Returns [] when there is no policy to check.
    """
    if not policy:
        return []
    grade = (employee or {}).get("grade") or policy.get("grade") or "-"
    justifications = entity.get("justifications") or {}

    if "claim_type" in entity or "travel_expenses" in entity:
        return _claim_violations(entity, policy, grade, justifications)
    return _request_violations(entity, policy, grade, justifications)
