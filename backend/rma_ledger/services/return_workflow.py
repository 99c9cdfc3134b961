# Overview: Pure return request state machine (no database access).

"""
Return Request Lifecycle

================================================================================
PURPOSE: Decide whether an RMA event is legal and what it changes
================================================================================

STATE MACHINE:
    pending_approval -> approved -> received -> inspecting -> inspected -> resolved -> closed
                                    received ----------------> inspected
    pending_approval -> rejected
    pending_approval | approved | received | inspecting | inspected -> cancelled

    TERMINAL: rejected, closed, cancelled

RULES:
1. transition() only computes; return_service persists the result with a
   compare-and-swap on the status it was computed from
2. resolve happens once. A second resolve is AlreadyResolvedError, not a
   generic illegal transition, so callers can treat it as idempotent
3. Cancelling after approval needs an elevated operator
4. destroy records disposal next to the status and never moves it
5. refund_processing, replacement_ordered and credit_issued are display
   labels for resolved, not states

Nothing in this module touches the session; every rule here can be tested
with plain values.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..errors import AlreadyResolvedError, InvalidTransitionError, ValidationError
from ..time_utils import utcnow


# =============================================================================
# STATES
# =============================================================================

STATUS_PENDING_APPROVAL = "pending_approval"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_RECEIVED = "received"
STATUS_INSPECTING = "inspecting"
STATUS_INSPECTED = "inspected"
STATUS_RESOLVED = "resolved"
STATUS_CLOSED = "closed"
STATUS_CANCELLED = "cancelled"

VALID_STATUSES = {
    STATUS_PENDING_APPROVAL,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_RECEIVED,
    STATUS_INSPECTING,
    STATUS_INSPECTED,
    STATUS_RESOLVED,
    STATUS_CLOSED,
    STATUS_CANCELLED,
}
TERMINAL_STATUSES = frozenset({STATUS_REJECTED, STATUS_CLOSED, STATUS_CANCELLED})
PRE_RESOLUTION_STATUSES = frozenset({
    STATUS_PENDING_APPROVAL,
    STATUS_APPROVED,
    STATUS_RECEIVED,
    STATUS_INSPECTING,
    STATUS_INSPECTED,
})
# Items, reasons and customer details are editable only before receipt
EDITABLE_STATUSES = frozenset({STATUS_PENDING_APPROVAL, STATUS_APPROVED})

STATUS_LABELS = {
    STATUS_PENDING_APPROVAL: "Pending Approval",
    STATUS_APPROVED: "Approved",
    STATUS_REJECTED: "Rejected",
    STATUS_RECEIVED: "Received",
    STATUS_INSPECTING: "Inspecting",
    STATUS_INSPECTED: "Inspected",
    STATUS_RESOLVED: "Resolved",
    STATUS_CLOSED: "Closed",
    STATUS_CANCELLED: "Cancelled",
}

RESOLUTION_PENDING = "pending"
RESOLUTION_REFUND = "refund"
RESOLUTION_REPLACEMENT = "replacement"
RESOLUTION_STORE_CREDIT = "store_credit"
RESOLUTION_TYPES = {RESOLUTION_REFUND, RESOLUTION_REPLACEMENT, RESOLUTION_STORE_CREDIT}

RESOLUTION_LABELS = {
    RESOLUTION_REFUND: "Refund Processing",
    RESOLUTION_REPLACEMENT: "Replacement Ordered",
    RESOLUTION_STORE_CREDIT: "Credit Issued",
}

INSPECTION_RESULTS = {"confirmed_defective", "customer_error", "acceptable", "partial_defect"}

RETURN_TYPES = {"customer_return", "supplier_return", "internal_damage", "recall"}
RETURN_REASONS = {
    "quality_issue",
    "wrong_product",
    "damaged",
    "expired",
    "recall",
    "customer_error",
    "supplier_defect",
    "other",
}


def status_label(status: str, resolution_type: str | None = None) -> str:
    """Human label; resolved requests show what the resolution was."""
    if status == STATUS_RESOLVED and resolution_type in RESOLUTION_LABELS:
        return RESOLUTION_LABELS[resolution_type]
    return STATUS_LABELS.get(status, status)


# =============================================================================
# EVENTS
# =============================================================================

EVENT_APPROVE = "approve"
EVENT_REJECT = "reject"
EVENT_RECEIVE = "receive"
EVENT_START_INSPECTION = "start_inspection"
EVENT_COMPLETE_INSPECTION = "complete_inspection"
EVENT_RESOLVE = "resolve"
EVENT_CLOSE = "close"
EVENT_CANCEL = "cancel"
EVENT_DESTROY = "destroy"

# Side effects return_service carries out alongside the status change
EFFECT_ISSUE_STORE_CREDIT = "issue_store_credit"
EFFECT_REPORT_DISPOSAL = "report_disposal"


@dataclass(frozen=True)
class WorkflowState:
    """The parts of a return request the state machine reads."""
    status: str
    resolution_type: str = RESOLUTION_PENDING
    total_value_cents: int = 0
    destroyed_at: datetime | None = None
    rma_number: str | None = None

    @classmethod
    def of(cls, return_request) -> "WorkflowState":
        return cls(
            status=return_request.status,
            resolution_type=return_request.resolution_type or RESOLUTION_PENDING,
            total_value_cents=return_request.total_value_cents or 0,
            destroyed_at=return_request.destroyed_at,
            rma_number=return_request.rma_number,
        )


@dataclass(frozen=True)
class Transition:
    """Outcome of a legal event: the new status, column changes and side effects."""
    status: str
    changes: dict = field(default_factory=dict)
    effects: tuple = ()


def _name(state: WorkflowState) -> str:
    return state.rma_number or "Return request"


def _require_status(state: WorkflowState, event: str, allowed) -> None:
    if state.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {event.replace('_', ' ')} {_name(state)} in status {state.status}",
            current_status=state.status,
            action=event,
        )


def _require_text(value, message: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(message)
    return str(value).strip()


def _resolution_amount(state: WorkflowState, payload: dict, label: str) -> int:
    amount = payload.get("amount_cents")
    if amount is None:
        amount = state.total_value_cents
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{label} amount must be an integer number of cents")
    if amount <= 0:
        raise ValidationError(f"{label} amount must be greater than zero")
    if amount > state.total_value_cents and not payload.get("allow_above_return_value"):
        raise ValidationError(
            f"{label} amount {amount} exceeds return value {state.total_value_cents}"
        )
    return amount


# =============================================================================
# TRANSITION FUNCTION
# =============================================================================

def transition(current: WorkflowState, event: str, payload: dict | None = None) -> Transition:
    """
    Compute the result of applying event to a request in state current.

    payload keys used by every event: operator_id, now (defaults to utcnow()).
    Event-specific keys are documented on each branch.

    Raises:
        InvalidTransitionError: event not legal from current.status
        AlreadyResolvedError: resolve on a resolved request, destroy twice
        ValidationError: payload missing required values
    """
    payload = payload or {}
    operator_id = payload.get("operator_id")
    now = payload.get("now") or utcnow()

    if event == EVENT_APPROVE:
        _require_status(current, event, {STATUS_PENDING_APPROVAL})
        return Transition(
            status=STATUS_APPROVED,
            changes={"approved_by_user_id": operator_id, "approved_at": now},
        )

    if event == EVENT_REJECT:
        # reason: required, non-empty
        _require_status(current, event, {STATUS_PENDING_APPROVAL})
        reason = _require_text(payload.get("reason"), "Rejection reason is required")
        return Transition(
            status=STATUS_REJECTED,
            changes={
                "rejected_by_user_id": operator_id,
                "rejected_at": now,
                "rejection_reason": reason,
            },
        )

    if event == EVENT_RECEIVE:
        _require_status(current, event, {STATUS_APPROVED})
        return Transition(
            status=STATUS_RECEIVED,
            changes={"received_by_user_id": operator_id, "received_at": now},
        )

    if event == EVENT_START_INSPECTION:
        _require_status(current, event, {STATUS_RECEIVED})
        return Transition(
            status=STATUS_INSPECTING,
            changes={"inspection_started_at": now},
        )

    if event == EVENT_COMPLETE_INSPECTION:
        # result: one of INSPECTION_RESULTS; notes: optional
        _require_status(current, event, {STATUS_RECEIVED, STATUS_INSPECTING})
        result = payload.get("result")
        if result not in INSPECTION_RESULTS:
            raise ValidationError(
                f"Inspection result must be one of {', '.join(sorted(INSPECTION_RESULTS))}"
            )
        return Transition(
            status=STATUS_INSPECTED,
            changes={
                "inspected_by_user_id": operator_id,
                "inspected_at": now,
                "inspection_result": result,
                "inspection_notes": payload.get("notes"),
            },
        )

    if event == EVENT_RESOLVE:
        # resolution_type; amount_cents (refund/store_credit, defaults to total);
        # replacement_order_reference (replacement); allow_above_return_value
        if current.status in (STATUS_RESOLVED, STATUS_CLOSED) or current.resolution_type != RESOLUTION_PENDING:
            raise AlreadyResolvedError(
                f"{_name(current)} is already resolved ({current.resolution_type})",
                current_status=current.status,
                action=event,
            )
        _require_status(current, event, {STATUS_INSPECTED})

        resolution_type = payload.get("resolution_type")
        if resolution_type not in RESOLUTION_TYPES:
            raise ValidationError(
                f"Resolution type must be one of {', '.join(sorted(RESOLUTION_TYPES))}"
            )

        changes = {
            "resolution_type": resolution_type,
            "resolved_by_user_id": operator_id,
            "resolved_at": now,
        }
        effects = ()
        if resolution_type == RESOLUTION_REFUND:
            changes["refund_amount_cents"] = _resolution_amount(current, payload, "Refund")
        elif resolution_type == RESOLUTION_REPLACEMENT:
            changes["replacement_order_reference"] = _require_text(
                payload.get("replacement_order_reference"),
                "Replacement order reference is required",
            )
        else:
            changes["credit_amount_cents"] = _resolution_amount(current, payload, "Credit")
            effects = (EFFECT_ISSUE_STORE_CREDIT,)

        return Transition(status=STATUS_RESOLVED, changes=changes, effects=effects)

    if event == EVENT_CLOSE:
        _require_status(current, event, {STATUS_RESOLVED})
        return Transition(
            status=STATUS_CLOSED,
            changes={"closed_by_user_id": operator_id, "closed_at": now},
        )

    if event == EVENT_CANCEL:
        # reason: optional; elevated: operator may cancel after approval
        _require_status(current, event, PRE_RESOLUTION_STATUSES)
        if current.status != STATUS_PENDING_APPROVAL and not payload.get("elevated"):
            raise InvalidTransitionError(
                f"Only pending requests can be cancelled without elevated access "
                f"({_name(current)} is {current.status})",
                current_status=current.status,
                action=event,
            )
        return Transition(
            status=STATUS_CANCELLED,
            changes={
                "cancelled_by_user_id": operator_id,
                "cancelled_at": now,
                "cancellation_reason": payload.get("reason"),
            },
        )

    if event == EVENT_DESTROY:
        # method, witness_name: required; location, witness_title, notes: optional
        if current.destroyed_at is not None:
            raise AlreadyResolvedError(
                f"{_name(current)} was already destroyed",
                current_status=current.status,
                action=event,
            )
        _require_status(current, event, {STATUS_RESOLVED})
        method = _require_text(payload.get("method"), "Destruction method is required")
        witness_name = _require_text(payload.get("witness_name"), "Witness name is required")
        return Transition(
            status=current.status,
            changes={
                "destruction_method": method,
                "destruction_location": payload.get("location"),
                "destruction_witness_name": witness_name,
                "destruction_witness_title": payload.get("witness_title"),
                "destruction_notes": payload.get("notes"),
                "destroyed_by_user_id": operator_id,
                "destroyed_at": now,
            },
            effects=(EFFECT_REPORT_DISPOSAL,),
        )

    raise ValidationError(f"Unknown return workflow event: {event}")


# =============================================================================
# NON-TRANSITION RULES
# =============================================================================

# Fields update_return may touch, by when they may be touched
ALWAYS_EDITABLE_FIELDS = {"internal_notes"}
PRE_RECEIPT_EDITABLE_FIELDS = {
    "items",
    "customer_id",
    "customer_name",
    "customer_email",
    "customer_phone",
    "return_reason",
    "detailed_reason",
    "customer_complaint",
    "regulatory_notification_required",
}


def check_update(current: WorkflowState, fields) -> None:
    """Raise unless every field in fields may be changed in current.status."""
    fields = set(fields)
    unknown = fields - ALWAYS_EDITABLE_FIELDS - PRE_RECEIPT_EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    restricted = fields & PRE_RECEIPT_EDITABLE_FIELDS
    if restricted and current.status not in EDITABLE_STATUSES:
        raise InvalidTransitionError(
            f"Cannot change {', '.join(sorted(restricted))} on {_name(current)} in status {current.status}",
            current_status=current.status,
            action="update",
        )


def destruction_totals(lines) -> dict:
    """
    Aggregate destroyed quantities: sum of quantity x per-unit value.

    Missing per-unit values count as zero.
    """
    weight = thc = cbd = 0.0
    for line in lines:
        quantity = line.quantity or 0
        weight += (line.weight_grams or 0.0) * quantity
        thc += (line.thc_mg or 0.0) * quantity
        cbd += (line.cbd_mg or 0.0) * quantity
    return {
        "total_weight_destroyed_grams": round(weight, 4),
        "total_thc_destroyed_mg": round(thc, 4),
        "total_cbd_destroyed_mg": round(cbd, 4),
    }
