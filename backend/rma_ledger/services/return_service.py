# Overview: Return request (RMA) persistence: create, update, transitions and destruction.

"""
Return Request Service

WHY: return_workflow decides what an event means; this module makes the
decision stick exactly once in the database, scoped to one tenant.

PERSISTENCE RULES:
1. Every status change is a conditional UPDATE
   (WHERE id = ? AND org_id = ? AND status = <status the decision was made from>).
   Zero rows means someone else moved the request first: the request is
   re-read and the event re-evaluated, which raises the precise error
   (AlreadyResolvedError for a second resolve, InvalidTransitionError otherwise).
2. A store_credit resolution issues its credit in the same transaction as the
   status change; if either fails both roll back.
3. destroy commits the local destruction record BEFORE calling the regulator.
   The remote call runs outside any transaction with a bounded timeout and
   its outcome is recorded afterwards. A reporting failure never fails destroy.
4. Plain field edits (update_return) use the version_id optimistic lock.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ExternalServiceError, InvalidTransitionError, ValidationError
from ..extensions import db
from ..models import ReturnLine, ReturnRequest, Sale
from ..time_utils import utcnow
from . import return_workflow as wf
from .compliance_service import build_return_lines
from .concurrency import DEFAULT_RETRY_ERRORS, SEQUENCE_RETRY_ERRORS, run_with_retry
from .disposal_service import DisposalReport, build_disposal_records, get_disposal_reporter
from .sequence_service import DOCUMENT_TYPE_RMA, next_document_number
from .store_credit_service import issue_credit_in_transaction
from .tenant_service import TenantScope


WRITE_ATTEMPTS = 5

DEFAULT_DESTRUCTION_LOCATION = "Not specified"
DEFAULT_WITNESS_TITLE = "Staff"
DEFAULT_DISPOSITION_NOTES = "Item destroyed as part of RMA resolution"


@dataclass
class DestructionResult:
    """What destroy() reports back. success is always True once local fields are saved."""
    return_request: ReturnRequest
    waste_manifest_number: str
    totals: dict
    metrc_reported: bool
    requires_manual_reporting: bool
    adjustment_ids: tuple = ()
    message: str = ""
    error: str | None = None
    success: bool = True
    reported_items: int = 0

    @property
    def metrc_status(self) -> str:
        return "reported" if self.metrc_reported else "pending_manual_report"

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "rma_number": self.return_request.rma_number,
            "waste_manifest_number": self.waste_manifest_number,
            "totals": dict(self.totals),
            "metrc_reported": self.metrc_reported,
            "metrc_status": self.metrc_status,
            "requires_manual_reporting": self.requires_manual_reporting,
            "metrc_adjustment_ids": list(self.adjustment_ids),
            "reported_items": self.reported_items,
            "message": self.message,
            "error": self.error,
        }


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def _require_text(value, message: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(message)
    return str(value).strip()


def _validate_return_type(return_type: str) -> str:
    if return_type not in wf.RETURN_TYPES:
        raise ValidationError(f"Return type must be one of {', '.join(sorted(wf.RETURN_TYPES))}")
    return return_type


def _validate_return_reason(return_reason: str) -> str:
    if return_reason not in wf.RETURN_REASONS:
        raise ValidationError(f"Return reason must be one of {', '.join(sorted(wf.RETURN_REASONS))}")
    return return_reason


# =============================================================================
# READS
# =============================================================================

def get_return(org_id: int, return_id: int) -> ReturnRequest:
    return TenantScope(org_id).get(ReturnRequest, return_id)


def get_return_by_number(org_id: int, rma_number: str) -> ReturnRequest:
    return TenantScope(org_id).get_by(ReturnRequest, rma_number=rma_number)


def list_returns(
    org_id: int,
    *,
    status: str | None = None,
    return_reason: str | None = None,
    customer_id: int | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ReturnRequest], int]:
    """Newest first. search matches RMA number, customer name or invoice number."""
    query = TenantScope(org_id).query(ReturnRequest)
    if status:
        query = query.filter(ReturnRequest.status == status)
    if return_reason:
        query = query.filter(ReturnRequest.return_reason == return_reason)
    if customer_id is not None:
        query = query.filter(ReturnRequest.customer_id == customer_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                ReturnRequest.rma_number.ilike(pattern),
                ReturnRequest.customer_name.ilike(pattern),
                ReturnRequest.invoice_number.ilike(pattern),
            )
        )
    total = query.count()
    items = (
        query.order_by(ReturnRequest.created_at.desc(), ReturnRequest.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return items, total


def get_manifest(org_id: int, return_id: int) -> dict:
    """Waste destruction manifest for a destroyed request."""
    scope = TenantScope(org_id)
    return_request = scope.get(ReturnRequest, return_id)
    if return_request.destroyed_at is None:
        raise InvalidTransitionError(
            f"{return_request.rma_number} has not been destroyed yet",
            current_status=return_request.status,
            action="manifest",
        )
    org = scope.organization()
    data = return_request.to_dict()["destruction"]
    return {
        "manifest_number": return_request.waste_manifest_number,
        "rma_number": return_request.rma_number,
        "organization": {"name": org.name, "license_number": org.license_number},
        "destruction_date": data["destroyed_at"],
        "destruction_method": return_request.destruction_method,
        "destruction_location": return_request.destruction_location,
        "witness": {
            "name": return_request.destruction_witness_name,
            "title": return_request.destruction_witness_title,
        },
        "totals": {
            "weight_grams": return_request.total_weight_destroyed_grams,
            "thc_mg": return_request.total_thc_destroyed_mg,
            "cbd_mg": return_request.total_cbd_destroyed_mg,
        },
        "items": [
            {
                "product_name": line.product_name,
                "batch_number": line.batch_number,
                "state_tracking_id": line.state_tracking_id,
                "quantity": line.quantity,
                "weight_grams": line.weight_grams,
                "thc_mg": line.thc_mg,
                "cbd_mg": line.cbd_mg,
            }
            for line in return_request.lines
        ],
        "metrc_reported": data["metrc_reported"],
        "metrc_report_date": data["metrc_report_date"],
        "metrc_adjustment_id": data["metrc_adjustment_id"],
        "requires_manual_reporting": data["requires_manual_reporting"],
    }


# =============================================================================
# CREATE / UPDATE
# =============================================================================

def create_return(
    org_id: int,
    operator_id: int,
    *,
    items: list[dict],
    return_reason: str,
    detailed_reason: str,
    customer_name: str | None = None,
    customer_id: int | None = None,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    related_sale_id: int | None = None,
    invoice_number: str | None = None,
    return_type: str = "customer_return",
    customer_complaint: str | None = None,
    regulatory_notification_required: bool = False,
    internal_notes: str | None = None,
) -> ReturnRequest:
    """
    Create a return request in pending_approval.

    Compliance snapshots are taken from the related sale when given (see
    compliance_service). Customer details default to the sale's.

    Raises:
        ValidationError: Bad type/reason/items or missing customer name
        NotFoundError: Related sale or referenced product not in this tenant
    """
    _validate_return_type(return_type)
    _validate_return_reason(return_reason)
    detailed_reason = _require_text(detailed_reason, "Detailed reason is required")
    scope = TenantScope(org_id)

    def _op() -> ReturnRequest:
        sale = scope.get(Sale, related_sale_id) if related_sale_id is not None else None
        lines = build_return_lines(org_id, items, related_sale_id)

        name = customer_name or (sale.customer_name if sale is not None else None)
        name = _require_text(name, "Customer name is required")

        now = utcnow()
        rma_number = next_document_number(org_id=org_id, document_type=DOCUMENT_TYPE_RMA, at=now)
        return_request = ReturnRequest(
            org_id=org_id,
            rma_number=rma_number,
            type=return_type,
            related_sale_id=sale.id if sale is not None else None,
            invoice_number=invoice_number or (sale.invoice_number if sale is not None else None),
            customer_id=customer_id if customer_id is not None else (sale.customer_id if sale is not None else None),
            customer_name=name,
            customer_email=customer_email or (sale.customer_email if sale is not None else None),
            customer_phone=customer_phone or (sale.customer_phone if sale is not None else None),
            return_reason=return_reason,
            detailed_reason=detailed_reason,
            customer_complaint=customer_complaint,
            regulatory_notification_required=bool(regulatory_notification_required),
            internal_notes=internal_notes,
            status=wf.STATUS_PENDING_APPROVAL,
            created_by_user_id=operator_id,
            last_modified_by_user_id=operator_id,
            created_at=now,
            updated_at=now,
        )
        return_request.lines = lines
        db.session.add(return_request)
        db.session.commit()
        return return_request

    return_request = run_with_retry(_op, attempts=WRITE_ATTEMPTS, retry_on=SEQUENCE_RETRY_ERRORS)
    current_app.logger.info(
        "Created return %s with %s lines, total %s cents (org_id=%s)",
        return_request.rma_number,
        len(return_request.lines),
        return_request.total_value_cents,
        org_id,
    )
    return return_request


def update_return(org_id: int, return_id: int, operator_id: int, **fields) -> ReturnRequest:
    """
    Edit a request's details.

    items, reasons and customer fields only while pending_approval or
    approved; internal_notes at any time. Totals are recomputed on flush.
    """
    if not fields:
        raise ValidationError("No fields to update")
    scope = TenantScope(org_id)

    def _op() -> ReturnRequest:
        return_request = scope.get(ReturnRequest, return_id)
        wf.check_update(wf.WorkflowState.of(return_request), fields.keys())

        if "return_reason" in fields:
            _validate_return_reason(fields["return_reason"])
        if "detailed_reason" in fields:
            fields["detailed_reason"] = _require_text(fields["detailed_reason"], "Detailed reason is required")
        if "customer_name" in fields:
            fields["customer_name"] = _require_text(fields["customer_name"], "Customer name is required")

        for key, value in fields.items():
            if key == "items":
                return_request.lines = build_return_lines(org_id, value, return_request.related_sale_id)
            else:
                setattr(return_request, key, value)
        return_request.last_modified_by_user_id = operator_id
        db.session.commit()
        return return_request

    return run_with_retry(_op, attempts=WRITE_ATTEMPTS)


# =============================================================================
# TRANSITIONS
# =============================================================================

def _compare_and_swap(return_request: ReturnRequest, expected: wf.WorkflowState, event: str, values: dict) -> bool:
    conditions = [
        ReturnRequest.id == return_request.id,
        ReturnRequest.org_id == return_request.org_id,
        ReturnRequest.status == expected.status,
    ]
    if event == wf.EVENT_RESOLVE:
        conditions.append(ReturnRequest.resolution_type == wf.RESOLUTION_PENDING)
    if event == wf.EVENT_DESTROY:
        conditions.append(ReturnRequest.destroyed_at.is_(None))

    stmt = (
        update(ReturnRequest)
        .where(*conditions)
        .values(version_id=ReturnRequest.version_id + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return bool(db.session.execute(stmt).rowcount)


def _lost_race(scope: TenantScope, return_id: int, event: str, payload: dict):
    """Re-evaluate against fresh state after a failed compare-and-swap; always raises."""
    db.session.rollback()
    fresh = scope.get(ReturnRequest, return_id)
    wf.transition(wf.WorkflowState.of(fresh), event, payload)
    raise InvalidTransitionError(
        f"{fresh.rma_number} was modified concurrently; reload and retry",
        current_status=fresh.status,
        action=event,
    )


def _apply_event(org_id: int, return_id: int, operator_id: int, event: str, payload: dict | None = None) -> ReturnRequest:
    scope = TenantScope(org_id)
    payload = dict(payload or {})
    payload["operator_id"] = operator_id

    def _op() -> ReturnRequest:
        return_request = scope.get(ReturnRequest, return_id)
        expected = wf.WorkflowState.of(return_request)
        payload["now"] = utcnow()
        result = wf.transition(expected, event, payload)

        values = dict(result.changes)
        values["status"] = result.status
        values["last_modified_by_user_id"] = operator_id
        if not _compare_and_swap(return_request, expected, event, values):
            _lost_race(scope, return_id, event, payload)

        if wf.EFFECT_ISSUE_STORE_CREDIT in result.effects:
            entry = issue_credit_in_transaction(
                org_id=org_id,
                customer={
                    "customer_id": return_request.customer_id,
                    "customer_name": return_request.customer_name,
                    "customer_email": return_request.customer_email,
                    "customer_phone": return_request.customer_phone,
                },
                amount_cents=values["credit_amount_cents"],
                source_type="rma_refund",
                operator_id=operator_id,
                expiration_months=payload.get("credit_expiration_months"),
                return_request_id=return_request.id,
                source_description=f"Store credit for {return_request.rma_number}",
                now=payload["now"],
            )
            db.session.execute(
                update(ReturnRequest)
                .where(ReturnRequest.id == return_request.id)
                .values(credit_memo_number=entry.credit_memo_number, store_credit_entry_id=entry.id)
                .execution_options(synchronize_session=False)
            )

        db.session.commit()
        return return_request

    retry_on = SEQUENCE_RETRY_ERRORS if event == wf.EVENT_RESOLVE else DEFAULT_RETRY_ERRORS
    return_request = run_with_retry(_op, attempts=WRITE_ATTEMPTS, retry_on=retry_on)
    current_app.logger.info(
        "Return %s: %s -> %s by user %s (org_id=%s)",
        return_request.rma_number,
        event,
        return_request.status,
        operator_id,
        org_id,
    )
    return return_request


def approve(org_id: int, return_id: int, operator_id: int) -> ReturnRequest:
    return _apply_event(org_id, return_id, operator_id, wf.EVENT_APPROVE)


def reject(org_id: int, return_id: int, operator_id: int, reason: str) -> ReturnRequest:
    return _apply_event(org_id, return_id, operator_id, wf.EVENT_REJECT, {"reason": reason})


def mark_received(org_id: int, return_id: int, operator_id: int) -> ReturnRequest:
    return _apply_event(org_id, return_id, operator_id, wf.EVENT_RECEIVE)


def start_inspection(org_id: int, return_id: int, operator_id: int) -> ReturnRequest:
    return _apply_event(org_id, return_id, operator_id, wf.EVENT_START_INSPECTION)


def complete_inspection(
    org_id: int,
    return_id: int,
    operator_id: int,
    result: str,
    notes: str | None = None,
) -> ReturnRequest:
    return _apply_event(
        org_id,
        return_id,
        operator_id,
        wf.EVENT_COMPLETE_INSPECTION,
        {"result": result, "notes": notes},
    )


def resolve(
    org_id: int,
    return_id: int,
    operator_id: int,
    resolution_type: str,
    *,
    amount_cents: int | None = None,
    replacement_order_reference: str | None = None,
    credit_expiration_months: int | None = None,
) -> ReturnRequest:
    """
    Resolve an inspected request as refund, replacement or store_credit.

    amount_cents defaults to the request's total value and may not exceed it
    unless ALLOW_CREDIT_ABOVE_RETURN_VALUE is set. store_credit issues a
    StoreCreditEntry and links it to the request.

    Raises:
        AlreadyResolvedError: The request was already resolved
        InvalidTransitionError: The request is not inspected
        ValidationError: Bad resolution type, amount or missing reference
    """
    return _apply_event(
        org_id,
        return_id,
        operator_id,
        wf.EVENT_RESOLVE,
        {
            "resolution_type": resolution_type,
            "amount_cents": amount_cents,
            "replacement_order_reference": replacement_order_reference,
            "credit_expiration_months": credit_expiration_months,
            "allow_above_return_value": current_app.config.get("ALLOW_CREDIT_ABOVE_RETURN_VALUE", False),
        },
    )


def close(org_id: int, return_id: int, operator_id: int) -> ReturnRequest:
    return _apply_event(org_id, return_id, operator_id, wf.EVENT_CLOSE)


def cancel(
    org_id: int,
    return_id: int,
    operator_id: int,
    reason: str | None = None,
    *,
    elevated: bool = False,
) -> ReturnRequest:
    """Cancel before resolution; after approval only with elevated=True."""
    return _apply_event(
        org_id,
        return_id,
        operator_id,
        wf.EVENT_CANCEL,
        {"reason": reason, "elevated": elevated},
    )


# =============================================================================
# DESTRUCTION
# =============================================================================

def destroy(
    org_id: int,
    return_id: int,
    operator_id: int,
    *,
    method: str,
    witness_name: str,
    witness_title: str | None = None,
    location: str | None = None,
    notes: str | None = None,
) -> DestructionResult:
    """
    Record destruction of a resolved request's items and report it.

    Step 1 (transaction): destruction fields, totals, manifest number and
    line dispositions are saved with requires_manual_reporting=True.
    Step 2 (no transaction): lines with a tracking id are reported.
    Step 3 (transaction): the report outcome is recorded.

    Returns a DestructionResult even when reporting fails.
    """
    scope = TenantScope(org_id)
    payload = {
        "operator_id": operator_id,
        "method": method,
        "witness_name": witness_name,
        "witness_title": witness_title or DEFAULT_WITNESS_TITLE,
        "location": location or DEFAULT_DESTRUCTION_LOCATION,
        "notes": notes,
    }

    def _record_locally():
        return_request = scope.get(ReturnRequest, return_id)
        expected = wf.WorkflowState.of(return_request)
        now = utcnow()
        payload["now"] = now
        result = wf.transition(expected, wf.EVENT_DESTROY, payload)

        totals = wf.destruction_totals(return_request.lines)
        manifest_number = f"WM-{return_request.rma_number}-{int(now.timestamp() * 1000)}"
        values = dict(result.changes)
        values.update(totals)
        values.update(
            waste_manifest_number=manifest_number,
            metrc_reported=False,
            requires_manual_reporting=True,
            last_modified_by_user_id=operator_id,
        )
        if not _compare_and_swap(return_request, expected, wf.EVENT_DESTROY, values):
            _lost_race(scope, return_id, wf.EVENT_DESTROY, payload)

        db.session.execute(
            update(ReturnLine)
            .where(ReturnLine.return_request_id == return_request.id)
            .values(
                disposition_method="destroy",
                disposition_date=now,
                disposition_notes=notes or DEFAULT_DISPOSITION_NOTES,
            )
            .execution_options(synchronize_session=False)
        )
        records = build_disposal_records(return_request, destroyed_at=now, method=payload["method"])
        db.session.commit()
        return return_request, records, manifest_number, totals

    return_request, records, manifest_number, totals = run_with_retry(_record_locally, attempts=WRITE_ATTEMPTS)
    current_app.logger.info(
        "Return %s destroyed: manifest %s, %s reportable items (org_id=%s)",
        return_request.rma_number,
        manifest_number,
        len(records),
        org_id,
    )

    report, error = _report_disposal(return_request, records)
    _record_report_outcome(return_request, report, error)

    return DestructionResult(
        return_request=return_request,
        waste_manifest_number=manifest_number,
        totals=totals,
        metrc_reported=report is not None,
        requires_manual_reporting=report is None,
        adjustment_ids=tuple(str(i) for i in report.adjustment_ids) if report is not None else (),
        message=report.message if report is not None else "Disposal reporting failed; manual reporting required",
        error=error,
        reported_items=len(records) if report is not None else 0,
    )


def retry_disposal_report(org_id: int, return_id: int, operator_id: int) -> DestructionResult:
    """Re-send a destroyed request's report after an earlier failure."""
    scope = TenantScope(org_id)
    return_request = scope.get(ReturnRequest, return_id)
    if return_request.destroyed_at is None:
        raise InvalidTransitionError(
            f"{return_request.rma_number} has not been destroyed yet",
            current_status=return_request.status,
            action="report_disposal",
        )
    if not return_request.requires_manual_reporting:
        raise InvalidTransitionError(
            f"{return_request.rma_number} has no pending disposal report",
            current_status=return_request.status,
            action="report_disposal",
        )

    destroyed_at = return_request.destroyed_at.replace(tzinfo=None)
    records = build_disposal_records(return_request, destroyed_at=destroyed_at, method=return_request.destruction_method)
    totals = {
        "total_weight_destroyed_grams": return_request.total_weight_destroyed_grams,
        "total_thc_destroyed_mg": return_request.total_thc_destroyed_mg,
        "total_cbd_destroyed_mg": return_request.total_cbd_destroyed_mg,
    }
    manifest_number = return_request.waste_manifest_number
    # Release the read transaction before going remote
    db.session.commit()

    report, error = _report_disposal(return_request, records)
    _record_report_outcome(return_request, report, error, operator_id=operator_id)
    return DestructionResult(
        return_request=return_request,
        waste_manifest_number=manifest_number,
        totals=totals,
        metrc_reported=report is not None,
        requires_manual_reporting=report is None,
        adjustment_ids=tuple(str(i) for i in report.adjustment_ids) if report is not None else (),
        message=report.message if report is not None else "Disposal reporting failed; manual reporting required",
        error=error,
        reported_items=len(records) if report is not None else 0,
    )


def _report_disposal(return_request: ReturnRequest, records) -> tuple[DisposalReport | None, str | None]:
    """Call the regulator. Returns (report, None) on success, (None, error text) on failure."""
    if not records:
        return DisposalReport(success=True, reported_at=utcnow(), message="No tracking IDs to report"), None
    try:
        report = get_disposal_reporter().report_bulk_waste(records)
    except ExternalServiceError as exc:
        current_app.logger.exception(
            "Disposal reporting failed for %s; flagged for manual reporting",
            return_request.rma_number,
        )
        return None, str(exc)
    if report is None or not report.success:
        message = (report.message if report is not None else "") or "Disposal reporter returned no confirmation"
        current_app.logger.error(
            "Disposal report for %s was not accepted: %s; flagged for manual reporting",
            return_request.rma_number,
            message,
        )
        return None, message
    return report, None


def _record_report_outcome(
    return_request: ReturnRequest,
    report: DisposalReport | None,
    error: str | None,
    *,
    operator_id: int | None = None,
) -> None:
    if report is not None:
        values = {
            "metrc_reported": True,
            "metrc_report_date": report.reported_at or utcnow(),
            "metrc_adjustment_id": ",".join(str(i) for i in report.adjustment_ids) or None,
            "requires_manual_reporting": False,
            "metrc_report_error": None,
        }
    else:
        values = {
            "metrc_reported": False,
            "requires_manual_reporting": True,
            "metrc_report_error": error,
        }
    if operator_id is not None:
        values["last_modified_by_user_id"] = operator_id

    def _op():
        db.session.execute(
            update(ReturnRequest)
            .where(ReturnRequest.id == return_request.id, ReturnRequest.org_id == return_request.org_id)
            .values(version_id=ReturnRequest.version_id + 1, **values)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    try:
        run_with_retry(_op, attempts=WRITE_ATTEMPTS)
    except SQLAlchemyError:
        # Local destruction record is already committed with requires_manual_reporting=True
        db.session.rollback()
        current_app.logger.exception(
            "Failed to record disposal reporting outcome for %s",
            return_request.rma_number,
        )


def pending_manual_reports(org_id: int) -> list[ReturnRequest]:
    """Destroyed requests whose disposal report still has to be filed."""
    return (
        TenantScope(org_id)
        .query(ReturnRequest)
        .filter(
            ReturnRequest.destroyed_at.is_not(None),
            ReturnRequest.requires_manual_reporting.is_(True),
        )
        .order_by(ReturnRequest.destroyed_at)
        .all()
    )
