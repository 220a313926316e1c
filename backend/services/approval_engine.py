"""
HRMS Approvals - Approval Workflow Engine

This module implements a deterministic state machine for every approvable HR
record: travel claims, travel requests, travel advances, goals and performance
improvement plans (PIPs).

The engine is pure business logic with no direct HTTP or DB calls. Each
operation validates the requested transition against the table for the entity
type, checks the acting role, mutates the record dict in place and returns a
TransitionResult describing the field changes. Persisting those changes (with
a conditional update keyed on the previous status) is the caller's job.

Entity Types Supported:
- TRAVEL_CLAIM: Draft -> Submitted -> Level1 -> [Level2] -> Level3 -> Finance -> Settled
- TRAVEL_REQUEST: Draft -> Submitted -> Approved
- TRAVEL_ADVANCE: Pending -> [Level1_Approved] -> Approved -> Paid -> Settled
- GOAL: Draft -> Submitted -> Approved -> In Progress -> Completed (Modified loop)
- PIP: Proposed -> HR Approved -> Employee Acknowledged
"""

from enum import Enum
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional, Dict, List, Tuple, Any, Callable, Union
import logging

from services.app_config import DEFAULT_ESCALATION_THRESHOLD
from services.claim_calculator import compute_net

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class WorkflowError(Exception):
    """Base error for workflow and validation failures. Mapped to JSON by the app."""
    code = "WORKFLOW_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(WorkflowError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource_type: str, resource_id: Optional[str] = None):
        message = f"{resource_type} not found" + (f": {resource_id}" if resource_id else "")
        super().__init__(message, {"resource_type": resource_type, "resource_id": resource_id})


class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"


class InvalidLevel(WorkflowError):
    code = "INVALID_LEVEL"


class AlreadyRejected(WorkflowError):
    code = "ALREADY_REJECTED"


class AlreadySettled(WorkflowError):
    code = "ALREADY_SETTLED"


class NotApproved(WorkflowError):
    code = "NOT_APPROVED"


class DeadlineExceeded(WorkflowError):
    code = "DEADLINE_EXCEEDED"


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"


class Forbidden(WorkflowError):
    code = "FORBIDDEN"
    status_code = 403


# =============================================================================
# ENTITY TYPES, STATUSES, OPERATIONS
# =============================================================================

class EntityType(str, Enum):
    """Approvable record types. Each has its own transition table."""
    TRAVEL_CLAIM = "TRAVEL_CLAIM"
    TRAVEL_REQUEST = "TRAVEL_REQUEST"
    TRAVEL_ADVANCE = "TRAVEL_ADVANCE"
    GOAL = "GOAL"
    PIP = "PIP"


class WorkflowStatus(str, Enum):
    """
    Workflow status values. Shared across all entity types.
    Not all statuses apply to all entity types.
    """
    # Claim chain (TRAVEL_CLAIM)
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    LEVEL1_APPROVED = "Level1_Approved"
    LEVEL2_APPROVED = "Level2_Approved"
    LEVEL3_APPROVED = "Level3_Approved"
    FINANCE_APPROVED = "Finance_Approved"
    SETTLED = "Settled"
    REJECTED = "Rejected"

    # Requests and advances
    PENDING = "Pending"
    APPROVED = "Approved"
    PAID = "Paid"
    CANCELLED = "Cancelled"

    # Goals
    MODIFIED = "Modified"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"

    # PIPs
    PROPOSED = "Proposed"
    HR_APPROVED = "HR Approved"
    EMPLOYEE_ACKNOWLEDGED = "Employee Acknowledged"


class WorkflowOperation(str, Enum):
    """Operations that trigger workflow state transitions."""
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    SETTLE = "settle"
    PAY = "pay"
    CANCEL = "cancel"
    MODIFY = "modify"
    START = "start"
    COMPLETE = "complete"
    ACKNOWLEDGE = "acknowledge"


class ApprovalLevel(str, Enum):
    LEVEL1 = "Level1"
    LEVEL2 = "Level2"
    LEVEL3 = "Level3"
    FINANCE = "Finance"


# Approval level -> prefix of the per-level slot fields on the record
LEVEL_SLOTS = {
    ApprovalLevel.LEVEL1.value: "level1",
    ApprovalLevel.LEVEL2.value: "level2",
    ApprovalLevel.LEVEL3.value: "level3",
    ApprovalLevel.FINANCE.value: "finance",
}


class Role(str, Enum):
    EMPLOYEE = "Employee"
    MANAGER = "Manager"
    HR_ADMIN = "HR Administrator"
    FINANCE_ADMIN = "Finance Administrator"
    PAYROLL_ADMIN = "Payroll Administrator"
    TENANT_ADMIN = "Tenant Admin"
    SUPER_ADMIN = "Super Admin"


# Always pass the per-level role gate
ADMIN_ROLES = {Role.TENANT_ADMIN.value, Role.SUPER_ADMIN.value}


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, for which tenant. Passed explicitly to every operation."""
    tenant_id: str
    user_id: str
    role: str
    email: Optional[str] = None
    name: Optional[str] = None
    employee_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# ROUTING GUARDS
# =============================================================================

TransitionContext = Dict[str, Any]
Guard = Callable[[Dict[str, Any], TransitionContext], bool]


@dataclass(frozen=True)
class Route:
    """A conditional edge: taken only when guard(entity, context) holds."""
    next_status: str
    guard: Optional[Guard] = None
    condition: str = ""


def _amount(value: Any) -> float:
    try:
        return round(float(value or 0), 2)
    except (TypeError, ValueError):
        return 0.0


def _threshold(context: TransitionContext) -> float:
    value = context.get("escalation_threshold")
    return DEFAULT_ESCALATION_THRESHOLD if value is None else float(value)


def exceeds_escalation_threshold(entity: Dict[str, Any], context: TransitionContext) -> bool:
    return _amount(entity.get("total_amount")) > _threshold(context)


def within_escalation_threshold(entity: Dict[str, Any], context: TransitionContext) -> bool:
    return not exceeds_escalation_threshold(entity, context)


def requires_finance_approval(entity: Dict[str, Any], context: TransitionContext) -> bool:
    return bool(entity.get("requires_finance_approval"))


def skips_finance_approval(entity: Dict[str, Any], context: TransitionContext) -> bool:
    return not requires_finance_approval(entity, context)


# =============================================================================
# WORKFLOW DEFINITIONS BY ENTITY TYPE
# =============================================================================

# Format: {current_status: {(operation, level): next_status | [Route, ...]}}
# level is None for every operation except approve.

S = WorkflowStatus
O = WorkflowOperation
L = ApprovalLevel

TransitionTarget = Union[str, List[Route]]

WORKFLOW_DEFINITIONS: Dict[str, Dict[str, Dict[Tuple[str, Optional[str]], TransitionTarget]]] = {
    # =========================================================================
    # TRAVEL_CLAIM: multi-level approval with amount-based escalation
    # =========================================================================
    EntityType.TRAVEL_CLAIM.value: {
        S.DRAFT.value: {
            (O.SUBMIT.value, None): S.SUBMITTED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.SUBMITTED.value: {
            (O.APPROVE.value, L.LEVEL1.value): S.LEVEL1_APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.LEVEL1_APPROVED.value: {
            (O.APPROVE.value, L.LEVEL2.value): [
                Route(S.LEVEL2_APPROVED.value, exceeds_escalation_threshold,
                      "total amount exceeds the escalation threshold"),
            ],
            (O.APPROVE.value, L.LEVEL3.value): [
                Route(S.LEVEL3_APPROVED.value, within_escalation_threshold,
                      "total amount is within the escalation threshold"),
            ],
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.LEVEL2_APPROVED.value: {
            (O.APPROVE.value, L.LEVEL3.value): S.LEVEL3_APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.LEVEL3_APPROVED.value: {
            (O.APPROVE.value, L.FINANCE.value): S.FINANCE_APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.FINANCE_APPROVED.value: {
            (O.SETTLE.value, None): S.SETTLED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
    },

    # =========================================================================
    # TRAVEL_REQUEST: single manager approval
    # =========================================================================
    EntityType.TRAVEL_REQUEST.value: {
        S.DRAFT.value: {
            (O.SUBMIT.value, None): S.SUBMITTED.value,
            (O.CANCEL.value, None): S.CANCELLED.value,
        },
        S.SUBMITTED.value: {
            (O.APPROVE.value, L.LEVEL1.value): S.APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
            (O.CANCEL.value, None): S.CANCELLED.value,
        },
        S.APPROVED.value: {
            (O.COMPLETE.value, None): S.COMPLETED.value,
            (O.CANCEL.value, None): S.CANCELLED.value,
        },
    },

    # =========================================================================
    # TRAVEL_ADVANCE: finance sign-off above the finance approval threshold
    # =========================================================================
    EntityType.TRAVEL_ADVANCE.value: {
        S.PENDING.value: {
            (O.APPROVE.value, L.LEVEL1.value): [
                Route(S.LEVEL1_APPROVED.value, requires_finance_approval,
                      "advance needs finance approval"),
                Route(S.APPROVED.value, skips_finance_approval,
                      "advance is below the finance approval threshold"),
            ],
            (O.APPROVE.value, L.FINANCE.value): S.APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.LEVEL1_APPROVED.value: {
            (O.APPROVE.value, L.FINANCE.value): S.APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.APPROVED.value: {
            (O.PAY.value, None): S.PAID.value,
            (O.SETTLE.value, None): S.SETTLED.value,
        },
        S.PAID.value: {
            (O.SETTLE.value, None): S.SETTLED.value,
        },
    },

    # =========================================================================
    # GOAL: manager approval, re-approval after modification
    # =========================================================================
    EntityType.GOAL.value: {
        S.DRAFT.value: {
            (O.SUBMIT.value, None): S.SUBMITTED.value,
            (O.CANCEL.value, None): S.CANCELLED.value,
        },
        S.SUBMITTED.value: {
            (O.APPROVE.value, L.LEVEL1.value): S.APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.MODIFIED.value: {
            (O.APPROVE.value, L.LEVEL1.value): S.APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.APPROVED.value: {
            (O.MODIFY.value, None): S.MODIFIED.value,
            (O.START.value, None): S.IN_PROGRESS.value,
            (O.COMPLETE.value, None): S.COMPLETED.value,
            (O.CANCEL.value, None): S.CANCELLED.value,
        },
        S.IN_PROGRESS.value: {
            (O.MODIFY.value, None): S.MODIFIED.value,
            (O.COMPLETE.value, None): S.COMPLETED.value,
            (O.CANCEL.value, None): S.CANCELLED.value,
        },
    },

    # =========================================================================
    # PIP: HR approval, then employee acknowledgement
    # =========================================================================
    EntityType.PIP.value: {
        S.PROPOSED.value: {
            (O.APPROVE.value, L.LEVEL1.value): S.HR_APPROVED.value,
            (O.REJECT.value, None): S.REJECTED.value,
        },
        S.HR_APPROVED.value: {
            (O.ACKNOWLEDGE.value, None): S.EMPLOYEE_ACKNOWLEDGED.value,
        },
    },
}


# =============================================================================
# ROLE GATES
# =============================================================================

_HR = Role.HR_ADMIN.value
_MANAGER = Role.MANAGER.value
_FINANCE = Role.FINANCE_ADMIN.value
_PAYROLL = Role.PAYROLL_ADMIN.value
_EMPLOYEE = Role.EMPLOYEE.value

# {entity_type: {(operation, level): allowed roles}}; Tenant/Super Admin always pass.
# Operations without an entry are open to any authenticated role the router admits.
ROLE_GATES: Dict[str, Dict[Tuple[str, Optional[str]], frozenset]] = {
    EntityType.TRAVEL_CLAIM.value: {
        (O.SUBMIT.value, None): frozenset({_EMPLOYEE, _HR}),
        (O.APPROVE.value, L.LEVEL1.value): frozenset({_MANAGER, _HR}),
        (O.APPROVE.value, L.LEVEL2.value): frozenset({_MANAGER, _HR}),
        (O.APPROVE.value, L.LEVEL3.value): frozenset({_FINANCE, _HR}),
        (O.APPROVE.value, L.FINANCE.value): frozenset({_FINANCE}),
        (O.REJECT.value, None): frozenset({_MANAGER, _FINANCE, _HR}),
        (O.SETTLE.value, None): frozenset({_FINANCE, _PAYROLL, _HR}),
    },
    EntityType.TRAVEL_REQUEST.value: {
        (O.SUBMIT.value, None): frozenset({_EMPLOYEE, _HR}),
        (O.APPROVE.value, L.LEVEL1.value): frozenset({_MANAGER, _HR}),
        (O.REJECT.value, None): frozenset({_MANAGER, _HR}),
    },
    EntityType.TRAVEL_ADVANCE.value: {
        (O.APPROVE.value, L.LEVEL1.value): frozenset({_MANAGER, _FINANCE, _HR}),
        (O.APPROVE.value, L.FINANCE.value): frozenset({_FINANCE}),
        (O.REJECT.value, None): frozenset({_MANAGER, _FINANCE, _HR}),
        (O.PAY.value, None): frozenset({_FINANCE, _PAYROLL, _HR}),
        (O.SETTLE.value, None): frozenset({_FINANCE, _PAYROLL, _HR}),
    },
    EntityType.GOAL.value: {
        (O.SUBMIT.value, None): frozenset({_EMPLOYEE, _MANAGER, _HR}),
        (O.APPROVE.value, L.LEVEL1.value): frozenset({_MANAGER, _HR}),
        (O.REJECT.value, None): frozenset({_MANAGER, _HR}),
    },
    EntityType.PIP.value: {
        (O.APPROVE.value, L.LEVEL1.value): frozenset({_HR}),
        (O.REJECT.value, None): frozenset({_HR}),
        (O.ACKNOWLEDGE.value, None): frozenset({_EMPLOYEE, _HR}),
    },
}

# Operations an Employee may only perform on their own record
OWNER_ONLY_OPERATIONS = {O.SUBMIT.value, O.ACKNOWLEDGE.value, O.CANCEL.value}


# =============================================================================
# WORKFLOW HISTORY ENTRY
# =============================================================================

class WorkflowHistoryEntry:
    """Represents a single entry in a record's workflow history."""

    def __init__(
        self,
        from_status: Optional[str],
        to_status: str,
        operation: str,
        actor: str = "system",
        role: Optional[str] = None,
        level: Optional[str] = None,
        comments: Optional[str] = None
    ):
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.from_status = from_status
        self.to_status = to_status
        self.operation = operation
        self.actor = actor
        self.role = role
        self.level = level
        self.comments = comments

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "operation": self.operation,
            "level": self.level,
            "actor": self.actor,
            "role": self.role,
            "comments": self.comments,
        }


@dataclass
class TransitionResult:
    """Outcome of a successful transition, ready to be persisted."""
    entity: Dict[str, Any]
    entity_type: str
    operation: str
    from_status: str
    to_status: str
    changes: Dict[str, Any]
    history_entry: WorkflowHistoryEntry
    level: Optional[str] = None
    advance_update: Optional[Dict[str, Any]] = field(default=None)


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class ApprovalEngine:
    """
    Multi-type approval state machine.

    Every public operation takes the entity type, the record dict and an
    ActorContext. Records are modified in place; the returned TransitionResult
    carries the same changes for a conditional database update.
    """

    @staticmethod
    def _key(value: Any) -> Optional[str]:
        return value.value if isinstance(value, Enum) else value

    @staticmethod
    def get_workflow_definition(entity_type: str) -> Dict:
        entity_type = ApprovalEngine._key(entity_type)
        if entity_type not in WORKFLOW_DEFINITIONS:
            raise ValueError(f"Unknown entity type: {entity_type}")
        return WORKFLOW_DEFINITIONS[entity_type]

    @staticmethod
    def parse_level(level: Any) -> str:
        """Normalize an approval level token, raising InvalidLevel when unknown."""
        try:
            return ApprovalLevel(ApprovalEngine._key(level)).value
        except ValueError:
            valid = [lv.value for lv in ApprovalLevel]
            raise InvalidLevel(
                f"Invalid approval level '{level}'. Valid: {valid}",
                {"level": level, "valid_levels": valid},
            )

    @staticmethod
    def can_transition(
        entity_type: str,
        entity: Dict[str, Any],
        operation: str,
        level: Optional[str] = None,
        context: Optional[TransitionContext] = None
    ) -> Tuple[bool, Optional[str], str]:
        """
        Check whether an operation is legal for the entity's current status.

        Returns:
            (can_transition, next_status, reason)
        """
        context = context or {}
        workflow_def = ApprovalEngine.get_workflow_definition(entity_type)
        current_status = entity.get("status")
        key = (ApprovalEngine._key(operation), ApprovalEngine._key(level))

        status_transitions = workflow_def.get(current_status)
        if status_transitions is None:
            return (False, None, f"No transitions defined for status '{current_status}'")

        target = status_transitions.get(key)
        if target is None:
            valid = [op if lv is None else f"{op}:{lv}" for op, lv in status_transitions]
            label = key[0] if key[1] is None else f"{key[0]}:{key[1]}"
            return (False, None, f"'{label}' not allowed from status '{current_status}'. Valid: {valid}")

        if isinstance(target, str):
            return (True, target, "Transition allowed")

        for route in target:
            if route.guard is None or route.guard(entity, context):
                return (True, route.next_status, route.condition or "Transition allowed")
        conditions = "; ".join(r.condition for r in target if r.condition)
        return (False, None, f"'{key[0]}:{key[1]}' requires: {conditions}")

    @staticmethod
    def check_role(
        entity_type: str,
        entity: Dict[str, Any],
        operation: str,
        level: Optional[str],
        actor: ActorContext
    ) -> None:
        """Raise Forbidden unless the actor may perform operation at level."""
        entity_type = ApprovalEngine._key(entity_type)
        operation = ApprovalEngine._key(operation)
        if actor.is_admin:
            return

        allowed = ROLE_GATES.get(entity_type, {}).get((operation, level))
        if allowed is not None and actor.role not in allowed:
            label = operation if level is None else f"{operation} ({level})"
            raise Forbidden(
                f"Role '{actor.role}' cannot {label} this record",
                {"role": actor.role, "allowed_roles": sorted(allowed)},
            )

        owner_id = entity.get("employee_id")
        if actor.role == Role.EMPLOYEE.value and operation in OWNER_ONLY_OPERATIONS:
            if not actor.employee_id or actor.employee_id != owner_id:
                raise Forbidden("Employees can only act on their own records")

        if operation in (O.APPROVE.value, O.REJECT.value) and actor.employee_id and actor.employee_id == owner_id:
            raise Forbidden("Approvers cannot act on their own records")

    @staticmethod
    def _guard_terminal(entity: Dict[str, Any], operation: str) -> None:
        status = entity.get("status")
        if status == S.REJECTED.value:
            if operation == O.REJECT.value:
                raise AlreadyRejected("Record is already rejected")
            raise InvalidTransition("Rejected records cannot be changed", {"status": status})
        if status == S.SETTLED.value:
            raise AlreadySettled("Record is already settled")

    @staticmethod
    def _resolve(
        entity_type: str,
        entity: Dict[str, Any],
        operation: str,
        actor: ActorContext,
        level: Optional[str] = None,
        context: Optional[TransitionContext] = None
    ) -> str:
        """Terminal guards, role gate and table lookup. Returns the next status."""
        ApprovalEngine._guard_terminal(entity, operation)
        ApprovalEngine.check_role(entity_type, entity, operation, level, actor)

        allowed, next_status, reason = ApprovalEngine.can_transition(
            entity_type, entity, operation, level, context
        )
        if not allowed:
            logger.warning(
                "Blocked transition: entity=%s, type=%s, status=%s, operation=%s, level=%s, reason=%s",
                entity.get("id"), ApprovalEngine._key(entity_type), entity.get("status"),
                operation, level, reason
            )
            raise InvalidTransition(
                reason,
                {"status": entity.get("status"), "operation": operation, "level": level},
            )
        return next_status

    @staticmethod
    def _apply(
        entity_type: str,
        entity: Dict[str, Any],
        operation: str,
        next_status: str,
        actor: ActorContext,
        level: Optional[str] = None,
        comments: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None
    ) -> TransitionResult:
        current_status = entity.get("status")
        changes = dict(changes or {})
        changes["status"] = next_status
        changes["updated_utc"] = datetime.now(timezone.utc).isoformat()

        history_entry = WorkflowHistoryEntry(
            from_status=current_status,
            to_status=next_status,
            operation=operation,
            actor=actor.user_id,
            role=actor.role,
            level=level,
            comments=comments,
        )

        entity.update(changes)
        entity.setdefault("workflow_history", []).append(history_entry.to_dict())

        logger.info(
            "Workflow transition: entity=%s, type=%s, %s -> %s (operation=%s, level=%s, actor=%s)",
            entity.get("id"), ApprovalEngine._key(entity_type), current_status, next_status,
            operation, level, actor.user_id
        )

        return TransitionResult(
            entity=entity,
            entity_type=ApprovalEngine._key(entity_type),
            operation=operation,
            from_status=current_status,
            to_status=next_status,
            changes=changes,
            history_entry=history_entry,
            level=level,
        )

    @staticmethod
    def transition(
        entity_type: str,
        entity: Dict[str, Any],
        operation: str,
        actor: ActorContext,
        comments: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        context: Optional[TransitionContext] = None
    ) -> TransitionResult:
        """Generic non-approval transition (cancel, modify, start, complete, acknowledge, pay)."""
        operation = ApprovalEngine._key(operation)
        next_status = ApprovalEngine._resolve(entity_type, entity, operation, actor, None, context)
        return ApprovalEngine._apply(
            entity_type, entity, operation, next_status, actor, comments=comments, changes=changes
        )

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    @staticmethod
    def submit(
        entity_type: str,
        entity: Dict[str, Any],
        actor: ActorContext,
        level1_approver_id: Optional[str] = None
    ) -> TransitionResult:
        """Draft -> Submitted. Assigns the Level1 approver (the owner's manager)."""
        operation = O.SUBMIT.value
        next_status = ApprovalEngine._resolve(entity_type, entity, operation, actor)
        changes = {
            "submitted_date": datetime.now(timezone.utc).isoformat(),
            "level1_approver_id": level1_approver_id,
        }
        return ApprovalEngine._apply(entity_type, entity, operation, next_status, actor, changes=changes)

    @staticmethod
    def approve(
        entity_type: str,
        entity: Dict[str, Any],
        level: Any,
        actor: ActorContext,
        comments: Optional[str] = None,
        approved_amount: Optional[float] = None,
        escalation_threshold: Optional[float] = None
    ) -> TransitionResult:
        """
        Record an approval at the given level.

        Level2 is only reachable when the claim total exceeds the escalation
        threshold; otherwise Level3 follows Level1 directly. At the Finance
        level a partial approved_amount replaces the claim total and the net
        settlement position is recomputed against the advance already paid.
        """
        entity_type = ApprovalEngine._key(entity_type)
        level = ApprovalEngine.parse_level(level)
        operation = O.APPROVE.value
        context = {"escalation_threshold": escalation_threshold}

        next_status = ApprovalEngine._resolve(entity_type, entity, operation, actor, level, context)

        slot = LEVEL_SLOTS[level]
        changes: Dict[str, Any] = {
            f"{slot}_approver_id": actor.user_id,
            f"{slot}_approved_date": datetime.now(timezone.utc).isoformat(),
            f"{slot}_comments": comments,
        }

        if entity_type == EntityType.TRAVEL_CLAIM.value:
            if level == L.LEVEL3.value:
                changes["policy_validated"] = True
            if level == L.FINANCE.value:
                changes.update(ApprovalEngine._finance_amounts(entity, approved_amount))

        return ApprovalEngine._apply(
            entity_type, entity, operation, next_status, actor, level, comments, changes
        )

    @staticmethod
    def _finance_amounts(entity: Dict[str, Any], approved_amount: Optional[float]) -> Dict[str, Any]:
        total = _amount(entity.get("total_amount"))
        if approved_amount is None:
            amount = total
        else:
            try:
                amount = round(float(approved_amount), 2)
            except (TypeError, ValueError):
                raise ValidationError("Approved amount must be a number", {"approved_amount": approved_amount})
        if amount < 0:
            raise ValidationError("Approved amount cannot be negative", {"approved_amount": amount})
        if amount > total:
            raise ValidationError(
                "Approved amount cannot exceed the claim total",
                {"approved_amount": amount, "total_amount": total},
            )

        changes: Dict[str, Any] = {"approved_amount": amount}
        if amount < total:
            changes["total_amount"] = amount
        changes.update(compute_net(amount, entity.get("advance_paid")))
        return changes

    @staticmethod
    def pending_level(entity_type: str, entity: Dict[str, Any], escalation_threshold: Optional[float] = None) -> str:
        """Approval level that was awaited in the entity's current status."""
        entity_type = ApprovalEngine._key(entity_type)
        status = entity.get("status")
        context = {"escalation_threshold": escalation_threshold}

        if status == S.LEVEL1_APPROVED.value:
            if entity_type == EntityType.TRAVEL_ADVANCE.value:
                return L.FINANCE.value
            if exceeds_escalation_threshold(entity, context):
                return L.LEVEL2.value
            return L.LEVEL3.value
        if status == S.LEVEL2_APPROVED.value:
            return L.LEVEL3.value
        if status in (S.LEVEL3_APPROVED.value, S.FINANCE_APPROVED.value):
            return L.FINANCE.value
        return L.LEVEL1.value

    @staticmethod
    def reject(
        entity_type: str,
        entity: Dict[str, Any],
        actor: ActorContext,
        comments: Optional[str] = None,
        escalation_threshold: Optional[float] = None
    ) -> TransitionResult:
        """Reject from any non-terminal status; comments land in the pending level's slot."""
        entity_type = ApprovalEngine._key(entity_type)
        operation = O.REJECT.value
        pending = ApprovalEngine.pending_level(entity_type, entity, escalation_threshold)
        next_status = ApprovalEngine._resolve(entity_type, entity, operation, actor)

        now = datetime.now(timezone.utc).isoformat()
        changes = {
            f"{LEVEL_SLOTS[pending]}_comments": comments,
            "rejected_level": pending,
            "rejected_by": actor.user_id,
            "rejected_date": now,
            "rejection_reason": comments,
        }
        return ApprovalEngine._apply(
            entity_type, entity, operation, next_status, actor, pending, comments, changes
        )

    @staticmethod
    def settle(
        entity: Dict[str, Any],
        actor: ActorContext,
        payment_reference: Optional[str],
        payment_method: Optional[str] = None
    ) -> TransitionResult:
        """
        Finance_Approved -> Settled for a travel claim.

        The net position is recomputed from approved_amount - advance_paid.
        When the claim is linked to an advance, result.advance_update carries
        the fields to write on that advance.
        """
        entity_type = EntityType.TRAVEL_CLAIM.value
        operation = O.SETTLE.value
        status = entity.get("status")
        if status == S.SETTLED.value:
            raise AlreadySettled("Claim is already settled")
        if status != S.FINANCE_APPROVED.value:
            raise NotApproved(
                "Claim must be finance approved before settlement",
                {"status": status},
            )
        if not payment_reference:
            raise ValidationError("Payment reference is required")

        next_status = ApprovalEngine._resolve(entity_type, entity, operation, actor)

        now = datetime.now(timezone.utc).isoformat()
        total = _amount(entity.get("total_amount"))
        approved = entity.get("approved_amount")
        approved = total if approved is None else _amount(approved)
        net = compute_net(approved, entity.get("advance_paid"))

        changes = {
            "settled_date": now,
            "payment_date": now,
            "payment_reference": payment_reference,
            "payment_method": payment_method,
            **net,
        }
        result = ApprovalEngine._apply(entity_type, entity, operation, next_status, actor, changes=changes)

        if entity.get("travel_advance_id"):
            advance_update = {"settled_amount": total, "settled_date": now}
            if net["net_recoverable"] > 0:
                advance_update["recovery_amount"] = net["net_recoverable"]
            result.advance_update = advance_update
        return result

    # -------------------------------------------------------------------------
    # Mutation guards
    # -------------------------------------------------------------------------

    @staticmethod
    def ensure_editable(entity: Dict[str, Any], editable_statuses: Tuple[str, ...] = (S.DRAFT.value,)) -> None:
        status = entity.get("status")
        if status == S.SETTLED.value:
            raise AlreadySettled("Settled records cannot be changed")
        if status == S.REJECTED.value:
            raise AlreadyRejected("Rejected records cannot be changed")
        if status not in editable_statuses:
            raise InvalidTransition(
                f"Record cannot be edited in status '{status}'",
                {"status": status, "editable_statuses": list(editable_statuses)},
            )

    @staticmethod
    def ensure_deletable(entity: Dict[str, Any]) -> None:
        if entity.get("status") != S.DRAFT.value:
            raise InvalidTransition(
                "Only draft records can be deleted",
                {"status": entity.get("status")},
            )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @staticmethod
    def get_statuses(entity_type: str) -> List[str]:
        """All statuses that appear in an entity type's table."""
        workflow_def = ApprovalEngine.get_workflow_definition(entity_type)
        statuses: List[str] = []
        for status, transitions in workflow_def.items():
            if status not in statuses:
                statuses.append(status)
            for target in transitions.values():
                nexts = [target] if isinstance(target, str) else [r.next_status for r in target]
                for next_status in nexts:
                    if next_status not in statuses:
                        statuses.append(next_status)
        return statuses
