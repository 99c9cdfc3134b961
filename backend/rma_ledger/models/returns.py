from __future__ import annotations

from sqlalchemy.orm import Session

from ..errors import InvalidTransitionError, ValidationError
from ..extensions import db
from ..services.return_workflow import STATUS_PENDING_APPROVAL, TERMINAL_STATUSES, status_label
from ..time_utils import to_utc_z, utcnow
from .compliance import COMPLIANCE_FIELDS, ComplianceColumnsMixin


class ReturnRequest(db.Model):
    """
    Return merchandise authorization (RMA).

    LIFECYCLE:
    pending_approval -> approved -> received -> [inspecting] -> inspected -> resolved -> closed
    pending_approval -> rejected
    any pre-resolution status -> cancelled (pending_approval, or elevated operator)

    DESIGN PRINCIPLES:
    - Status only changes through return_service transitions (compare-and-swap on status)
    - rma_number is allocated once at creation and never changes
    - total_value_cents is recomputed from lines before every flush
    - Terminal requests only accept notes, audit and disposal-outcome changes
    - Destruction is recorded alongside status, it never moves status
    """
    __tablename__ = "return_requests"
    __table_args__ = (
        db.UniqueConstraint("org_id", "rma_number", name="uq_return_requests_org_rma_number"),
        db.Index("ix_return_requests_org_created", "org_id", "created_at"),
        db.Index("ix_return_requests_org_status", "org_id", "status"),
        db.Index("ix_return_requests_org_customer", "org_id", "customer_id"),
        db.Index("ix_return_requests_org_reason", "org_id", "return_reason"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    # Human-readable number (e.g., "RMA-202610-0001")
    rma_number = db.Column(db.String(32), nullable=False)

    # customer_return, supplier_return, internal_damage, recall
    type = db.Column(db.String(32), nullable=False, default="customer_return")

    # Related documents
    related_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    invoice_number = db.Column(db.String(64), nullable=True)

    # Customer snapshot
    customer_id = db.Column(db.Integer, nullable=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    total_value_cents = db.Column(db.Integer, nullable=False, default=0)

    return_reason = db.Column(db.String(32), nullable=False)
    detailed_reason = db.Column(db.Text, nullable=False)
    customer_complaint = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(32), nullable=False, default=STATUS_PENDING_APPROVAL, index=True)

    # Approval / rejection
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by_user_id = db.Column(db.Integer, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    # Receipt / inspection
    received_by_user_id = db.Column(db.Integer, nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    inspection_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    inspected_by_user_id = db.Column(db.Integer, nullable=True)
    inspected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    inspection_result = db.Column(db.String(32), nullable=False, default="pending")
    inspection_notes = db.Column(db.Text, nullable=True)

    # Resolution
    resolution_type = db.Column(db.String(16), nullable=False, default="pending")
    resolved_by_user_id = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    replacement_order_reference = db.Column(db.String(64), nullable=True)
    credit_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_memo_number = db.Column(db.String(32), nullable=True)
    store_credit_entry_id = db.Column(
        db.Integer,
        db.ForeignKey("store_credit_entries.id", use_alter=True, name="fk_return_requests_store_credit_entry_id"),
        nullable=True,
    )

    # Close / cancel
    closed_by_user_id = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    regulatory_notification_required = db.Column(db.Boolean, nullable=False, default=False)

    # Destruction (local record, always persisted)
    destruction_method = db.Column(db.String(64), nullable=True)
    destruction_location = db.Column(db.String(255), nullable=True)
    destruction_witness_name = db.Column(db.String(255), nullable=True)
    destruction_witness_title = db.Column(db.String(128), nullable=True)
    destruction_notes = db.Column(db.Text, nullable=True)
    destroyed_by_user_id = db.Column(db.Integer, nullable=True)
    destroyed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    total_weight_destroyed_grams = db.Column(db.Float, nullable=True)
    total_thc_destroyed_mg = db.Column(db.Float, nullable=True)
    total_cbd_destroyed_mg = db.Column(db.Float, nullable=True)
    waste_manifest_number = db.Column(db.String(96), nullable=True)

    # Regulator reporting outcome (best effort, recorded after the remote call)
    metrc_reported = db.Column(db.Boolean, nullable=False, default=False)
    metrc_report_date = db.Column(db.DateTime(timezone=True), nullable=True)
    metrc_adjustment_id = db.Column(db.Text, nullable=True)
    requires_manual_reporting = db.Column(db.Boolean, nullable=False, default=False)
    metrc_report_error = db.Column(db.Text, nullable=True)

    internal_notes = db.Column(db.Text, nullable=True)

    # Audit
    created_by_user_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    last_modified_by_user_id = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    organization = db.relationship("Organization", backref=db.backref("return_requests", lazy=True))
    related_sale = db.relationship("Sale")
    store_credit_entry = db.relationship("StoreCreditEntry", foreign_keys=[store_credit_entry_id])
    lines = db.relationship(
        "ReturnLine",
        backref="return_request",
        order_by="ReturnLine.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def calculate_total_cents(self) -> int:
        return sum(line.calculate_value_cents() for line in self.lines)

    def days_open(self, now=None) -> int:
        if self.created_at is None:
            return 0
        now = now or utcnow()
        created = self.created_at.replace(tzinfo=None)
        return max(0, (now - created).days)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "rma_number": self.rma_number,
            "type": self.type,
            "related_sale_id": self.related_sale_id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "total_value_cents": self.total_value_cents,
            "return_reason": self.return_reason,
            "detailed_reason": self.detailed_reason,
            "customer_complaint": self.customer_complaint,
            "status": self.status,
            "status_display": status_label(self.status, self.resolution_type),
            "approved_by_user_id": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "rejected_by_user_id": self.rejected_by_user_id,
            "rejected_at": to_utc_z(self.rejected_at) if self.rejected_at else None,
            "rejection_reason": self.rejection_reason,
            "received_by_user_id": self.received_by_user_id,
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "inspection_started_at": to_utc_z(self.inspection_started_at) if self.inspection_started_at else None,
            "inspected_by_user_id": self.inspected_by_user_id,
            "inspected_at": to_utc_z(self.inspected_at) if self.inspected_at else None,
            "inspection_result": self.inspection_result,
            "inspection_notes": self.inspection_notes,
            "resolution_type": self.resolution_type,
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "refund_amount_cents": self.refund_amount_cents,
            "replacement_order_reference": self.replacement_order_reference,
            "credit_amount_cents": self.credit_amount_cents,
            "credit_memo_number": self.credit_memo_number,
            "store_credit_entry_id": self.store_credit_entry_id,
            "closed_by_user_id": self.closed_by_user_id,
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
            "regulatory_notification_required": self.regulatory_notification_required,
            "destruction": {
                "method": self.destruction_method,
                "location": self.destruction_location,
                "witness_name": self.destruction_witness_name,
                "witness_title": self.destruction_witness_title,
                "notes": self.destruction_notes,
                "destroyed_by_user_id": self.destroyed_by_user_id,
                "destroyed_at": to_utc_z(self.destroyed_at) if self.destroyed_at else None,
                "total_weight_grams": self.total_weight_destroyed_grams,
                "total_thc_mg": self.total_thc_destroyed_mg,
                "total_cbd_mg": self.total_cbd_destroyed_mg,
                "waste_manifest_number": self.waste_manifest_number,
                "metrc_reported": self.metrc_reported,
                "metrc_report_date": to_utc_z(self.metrc_report_date) if self.metrc_report_date else None,
                "metrc_adjustment_id": self.metrc_adjustment_id,
                "requires_manual_reporting": self.requires_manual_reporting,
                "metrc_report_error": self.metrc_report_error,
            },
            "internal_notes": self.internal_notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "last_modified_by_user_id": self.last_modified_by_user_id,
            "updated_at": to_utc_z(self.updated_at),
            "days_open": self.days_open(),
            "version_id": self.version_id,
            "lines": [line.to_dict() for line in self.lines],
        }


class ReturnLine(ComplianceColumnsMixin, db.Model):
    """
    Individual line on a return request.

    CRITICAL: Compliance columns are a snapshot taken when the return was
    created (from the sale line when available, else the live product).
    They are write-once; later catalog changes never flow back here.
    """
    __tablename__ = "return_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_request_id = db.Column(db.Integer, db.ForeignKey("return_requests.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    sale_line_id = db.Column(db.Integer, db.ForeignKey("sale_lines.id"), nullable=True)
    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_value_cents = db.Column(db.Integer, nullable=False, default=0)

    # defective, damaged, unopened, expired, wrong_product
    condition = db.Column(db.String(16), nullable=False, default="unopened")
    reason = db.Column(db.Text, nullable=True)

    # sale, product, placeholder
    compliance_source = db.Column(db.String(16), nullable=False, default="placeholder")

    # Disposition (written by destroy)
    disposition_method = db.Column(db.String(16), nullable=False, default="pending")
    disposition_date = db.Column(db.DateTime(timezone=True), nullable=True)
    disposition_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def calculate_value_cents(self) -> int:
        return (self.quantity or 0) * (self.unit_price_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_request_id": self.return_request_id,
            "position": self.position,
            "product_id": self.product_id,
            "sale_line_id": self.sale_line_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_value_cents": self.line_value_cents,
            "condition": self.condition,
            "reason": self.reason,
            "compliance_source": self.compliance_source,
            "compliance": self.compliance_dict(),
            "disposition_method": self.disposition_method,
            "disposition_date": to_utc_z(self.disposition_date) if self.disposition_date else None,
            "disposition_notes": self.disposition_notes,
            "created_at": to_utc_z(self.created_at),
        }


# =============================================================================
# PERSISTENCE GUARDS
# =============================================================================

# Writable on a terminal (closed/cancelled/rejected) request
_TERMINAL_WRITABLE_FIELDS = {
    "internal_notes",
    "last_modified_by_user_id",
    "updated_at",
    "version_id",
    "metrc_reported",
    "metrc_report_date",
    "metrc_adjustment_id",
    "requires_manual_reporting",
    "metrc_report_error",
}


@db.event.listens_for(Session, "before_flush")
def _recalculate_return_totals(session, flush_context, instances):
    """Keep line values and request totals in step with quantities and prices."""
    touched = set()
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, ReturnLine):
            value = obj.calculate_value_cents()
            if obj.line_value_cents != value:
                obj.line_value_cents = value
            if obj.return_request is not None:
                touched.add(obj.return_request)
        elif isinstance(obj, ReturnRequest):
            touched.add(obj)

    for return_request in touched:
        if return_request in session.deleted:
            continue
        total = return_request.calculate_total_cents()
        if return_request.total_value_cents != total:
            return_request.total_value_cents = total


@db.event.listens_for(ReturnRequest, "before_update")
def _guard_return_request(mapper, connection, target):
    state = db.inspect(target)

    number_history = state.attrs.rma_number.history
    if number_history.deleted and number_history.deleted[0] is not None:
        raise ValidationError("RMA number is assigned once at creation and cannot change")

    status_history = state.attrs.status.history
    previous_status = status_history.deleted[0] if status_history.deleted else target.status
    if previous_status in TERMINAL_STATUSES:
        changed = {
            attr.key
            for attr in state.attrs
            if attr.key not in _TERMINAL_WRITABLE_FIELDS and attr.history.has_changes()
        }
        if changed:
            raise InvalidTransitionError(
                f"RMA {target.rma_number} is {previous_status}; cannot modify {', '.join(sorted(changed))}",
                current_status=previous_status,
                action="update",
            )


@db.event.listens_for(ReturnLine, "before_update")
def _guard_compliance_snapshot(mapper, connection, target):
    state = db.inspect(target)
    changed = [field for field in COMPLIANCE_FIELDS if state.attrs[field].history.has_changes()]
    if changed:
        raise ValidationError(
            f"Compliance snapshot is write-once; cannot change {', '.join(changed)} on return line {target.id}"
        )
