from __future__ import annotations

from ..errors import ValidationError
from ..extensions import db
from ..time_utils import to_utc_z


class StoreCreditEntry(db.Model):
    """
    Store credit issued to a customer (credit memo).

    LEDGER IDENTITY:
    remaining_balance_cents + sum(usage.amount_cents) == original_amount_cents

    STATUS:
    active -> partially_used -> fully_used
    active | partially_used -> expired (sweep) | voided (void)

    DESIGN PRINCIPLES:
    - original_amount_cents never changes after issue
    - remaining_balance_cents only decreases, via conditional UPDATE in store_credit_service
    - Every decrease writes exactly one StoreCreditUsage row in the same transaction
    """
    __tablename__ = "store_credit_entries"
    __table_args__ = (
        db.UniqueConstraint("org_id", "credit_memo_number", name="uq_store_credit_entries_org_memo"),
        db.CheckConstraint("remaining_balance_cents >= 0", name="ck_store_credit_entries_remaining_nonnegative"),
        db.CheckConstraint(
            "remaining_balance_cents <= original_amount_cents",
            name="ck_store_credit_entries_remaining_le_original",
        ),
        db.Index("ix_store_credit_entries_org_customer_status", "org_id", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    # Human-readable number (e.g., "CM-202610-0001")
    credit_memo_number = db.Column(db.String(32), nullable=False)

    # Customer reference + contact snapshot
    customer_id = db.Column(db.Integer, nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True, index=True)
    customer_phone = db.Column(db.String(32), nullable=True, index=True)

    original_amount_cents = db.Column(db.Integer, nullable=False)
    remaining_balance_cents = db.Column(db.Integer, nullable=False)

    # active, partially_used, fully_used, expired, voided
    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    # rma_refund, promotional, compensation, loyalty, manual
    source_type = db.Column(db.String(16), nullable=False)
    return_request_id = db.Column(db.Integer, db.ForeignKey("return_requests.id"), nullable=True, index=True)
    source_description = db.Column(db.Text, nullable=True)

    issued_by_user_id = db.Column(db.Integer, nullable=False)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    voided_by_user_id = db.Column(db.Integer, nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.Text, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    usages = db.relationship(
        "StoreCreditUsage",
        backref="entry",
        order_by="StoreCreditUsage.id",
        lazy=True,
    )
    return_request = db.relationship("ReturnRequest", foreign_keys=[return_request_id])
    __mapper_args__ = {"version_id_col": version_id}

    def used_amount_cents(self) -> int:
        return sum(usage.amount_cents for usage in self.usages)

    def to_dict(self, include_usage: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "credit_memo_number": self.credit_memo_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "original_amount_cents": self.original_amount_cents,
            "remaining_balance_cents": self.remaining_balance_cents,
            "status": self.status,
            "source_type": self.source_type,
            "return_request_id": self.return_request_id,
            "source_description": self.source_description,
            "issued_by_user_id": self.issued_by_user_id,
            "issued_at": to_utc_z(self.issued_at),
            "expires_at": to_utc_z(self.expires_at) if self.expires_at else None,
            "voided_by_user_id": self.voided_by_user_id,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "void_reason": self.void_reason,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_usage:
            data["usage_history"] = [usage.to_dict() for usage in self.usages]
        return data


class StoreCreditUsage(db.Model):
    """
    Append-only usage history for a credit entry.

    entry_type:
    - apply: credit spent on a transaction
    - void: balance removed when the entry was voided
    """
    __tablename__ = "store_credit_usages"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_store_credit_usages_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("store_credit_entries.id"), nullable=False, index=True)

    entry_type = db.Column(db.String(8), nullable=False, default="apply")
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    used_by_user_id = db.Column(db.Integer, nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=False)

    transaction_reference = db.Column(db.String(64), nullable=True)
    register_reference = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "entry_type": self.entry_type,
            "amount_cents": self.amount_cents,
            "balance_after_cents": self.balance_after_cents,
            "used_by_user_id": self.used_by_user_id,
            "used_at": to_utc_z(self.used_at),
            "transaction_reference": self.transaction_reference,
            "register_reference": self.register_reference,
            "notes": self.notes,
        }


@db.event.listens_for(StoreCreditUsage, "before_update")
def _usage_is_append_only(mapper, connection, target):
    raise ValidationError(f"Store credit usage {target.id} is append-only and cannot be modified")


@db.event.listens_for(StoreCreditUsage, "before_delete")
def _usage_is_never_deleted(mapper, connection, target):
    raise ValidationError(f"Store credit usage {target.id} is append-only and cannot be deleted")
