# Overview: Store credit ledger: issue, apply, void, balances and expiry sweeps.

"""
Store Credit Ledger

WHY: Store credit is money owed to a customer. Two registers redeeming the
same memo at once must not both succeed against one balance, and every
cent that leaves an entry must be explained by a usage row.

LEDGER INVARIANTS:
1. remaining_balance_cents + sum(usage.amount_cents) == original_amount_cents
2. 0 <= remaining_balance_cents <= original_amount_cents
3. Applications only against active / partially_used, unexpired entries
4. Usage rows are append-only (ORM events reject updates and deletes)

CONCURRENCY DESIGN:
- apply is ONE conditional UPDATE (remaining = remaining - amount WHERE
  remaining >= amount AND status applicable AND not expired). The database
  serializes concurrent decrements; the loser matches zero rows and the
  reason is diagnosed from a fresh read.
- void is a compare-and-swap on (status, remaining) as read.
- Lock contention (OperationalError) rolls back and re-runs the whole
  operation; the re-run re-reads state, so nothing is applied twice.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import case, func, or_, update

from ..errors import (
    AlreadyResolvedError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import StoreCreditEntry, StoreCreditUsage
from ..time_utils import add_months, utcnow
from .concurrency import SEQUENCE_RETRY_ERRORS, run_with_retry
from .sequence_service import DOCUMENT_TYPE_CREDIT_MEMO, next_document_number
from .tenant_service import TenantScope


CREDIT_STATUS_ACTIVE = "active"
CREDIT_STATUS_PARTIALLY_USED = "partially_used"
CREDIT_STATUS_FULLY_USED = "fully_used"
CREDIT_STATUS_EXPIRED = "expired"
CREDIT_STATUS_VOIDED = "voided"

APPLICABLE_STATUSES = (CREDIT_STATUS_ACTIVE, CREDIT_STATUS_PARTIALLY_USED)

SOURCE_TYPES = {"rma_refund", "promotional", "compensation", "loyalty", "manual"}

USAGE_APPLY = "apply"
USAGE_VOID = "void"

WRITE_ATTEMPTS = 5


# =============================================================================
# HELPERS
# =============================================================================

def _require_positive_cents(amount_cents, label: str = "Amount") -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError(f"{label} must be an integer number of cents")
    if amount_cents <= 0:
        raise ValidationError(f"{label} must be greater than zero")
    return amount_cents


def get_credit(org_id: int, memo_or_id) -> StoreCreditEntry:
    """Load a credit entry by id or credit memo number within the tenant."""
    scope = TenantScope(org_id)
    if isinstance(memo_or_id, int) and not isinstance(memo_or_id, bool):
        return scope.get(StoreCreditEntry, memo_or_id)
    if not isinstance(memo_or_id, str) or not memo_or_id.strip():
        raise ValidationError("Credit memo number or id is required")
    entry = scope.query(StoreCreditEntry).filter_by(credit_memo_number=memo_or_id.strip()).first()
    if entry is None:
        raise NotFoundError("Store credit not found")
    return entry


def _is_expired(entry: StoreCreditEntry, now: datetime) -> bool:
    return entry.expires_at is not None and entry.expires_at.replace(tzinfo=None) <= now


def _diagnose_rejected_apply(entry: StoreCreditEntry, amount_cents: int, now: datetime) -> Exception:
    """
    Explain why a conditional decrement matched no row, from fresh state.

    Voided and expired entries are unusable whatever the amount; a fully used
    entry reports its (zero) balance.
    """
    if entry.status in (CREDIT_STATUS_VOIDED, CREDIT_STATUS_EXPIRED):
        return InvalidTransitionError(
            f"Store credit {entry.credit_memo_number} is {entry.status}",
            current_status=entry.status,
            action="apply",
        )
    if _is_expired(entry, now):
        return InvalidTransitionError(
            f"Store credit {entry.credit_memo_number} has expired",
            current_status=entry.status,
            action="apply",
        )
    if amount_cents > entry.remaining_balance_cents:
        return InsufficientBalanceError(amount_cents, entry.remaining_balance_cents)
    if entry.status == CREDIT_STATUS_FULLY_USED:
        return InvalidTransitionError(
            f"Store credit {entry.credit_memo_number} is {entry.status}",
            current_status=entry.status,
            action="apply",
        )
    return InvalidTransitionError(
        f"Store credit {entry.credit_memo_number} was modified concurrently; reload and retry",
        current_status=entry.status,
        action="apply",
    )


# =============================================================================
# ISSUE
# =============================================================================

def issue_credit_in_transaction(
    *,
    org_id: int,
    customer: dict,
    amount_cents: int,
    source_type: str,
    operator_id: int,
    expiration_months: int | None = None,
    return_request_id: int | None = None,
    credit_memo_number: str | None = None,
    source_description: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> StoreCreditEntry:
    """
    Create a credit entry in the caller's transaction (flushed, not committed).

    Used directly by return resolution so the credit and the resolution
    commit or roll back together.
    """
    _require_positive_cents(amount_cents)
    if source_type not in SOURCE_TYPES:
        raise ValidationError(f"Source type must be one of {', '.join(sorted(SOURCE_TYPES))}")
    customer = customer or {}
    customer_name = (customer.get("customer_name") or "").strip()
    if not customer_name:
        raise ValidationError("Customer name is required")

    if expiration_months is None:
        expiration_months = current_app.config.get("DEFAULT_CREDIT_EXPIRATION_MONTHS")
    if expiration_months is not None and (
        isinstance(expiration_months, bool) or not isinstance(expiration_months, int) or expiration_months <= 0
    ):
        raise ValidationError("Expiration months must be a positive whole number")

    scope = TenantScope(org_id)
    now = now or utcnow()

    if credit_memo_number:
        credit_memo_number = credit_memo_number.strip()
        taken = scope.query(StoreCreditEntry).filter_by(credit_memo_number=credit_memo_number).first()
        if taken is not None:
            raise ValidationError(f"Credit memo number {credit_memo_number} is already in use")
    else:
        credit_memo_number = next_document_number(
            org_id=org_id,
            document_type=DOCUMENT_TYPE_CREDIT_MEMO,
            at=now,
        )

    entry = StoreCreditEntry(
        org_id=org_id,
        credit_memo_number=credit_memo_number,
        customer_id=customer.get("customer_id"),
        customer_name=customer_name,
        customer_email=customer.get("customer_email"),
        customer_phone=customer.get("customer_phone"),
        original_amount_cents=amount_cents,
        remaining_balance_cents=amount_cents,
        status=CREDIT_STATUS_ACTIVE,
        source_type=source_type,
        return_request_id=return_request_id,
        source_description=source_description,
        issued_by_user_id=operator_id,
        issued_at=now,
        expires_at=add_months(now, expiration_months) if expiration_months else None,
        notes=notes,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def issue_credit(
    org_id: int,
    customer: dict,
    amount_cents: int,
    source_type: str,
    operator_id: int,
    expiration_months: int | None = None,
    return_request_id: int | None = None,
    credit_memo_number: str | None = None,
    *,
    source_description: str | None = None,
    notes: str | None = None,
) -> StoreCreditEntry:
    """
    Issue store credit and commit.

    Returns:
        The committed StoreCreditEntry (status active, remaining == original)

    Raises:
        ValidationError: Non-positive amount, unknown source type, missing
            customer name, or a caller-supplied memo number already in use
    """
    def _op() -> StoreCreditEntry:
        entry = issue_credit_in_transaction(
            org_id=org_id,
            customer=customer,
            amount_cents=amount_cents,
            source_type=source_type,
            operator_id=operator_id,
            expiration_months=expiration_months,
            return_request_id=return_request_id,
            credit_memo_number=credit_memo_number,
            source_description=source_description,
            notes=notes,
        )
        db.session.commit()
        return entry

    entry = run_with_retry(_op, attempts=WRITE_ATTEMPTS, retry_on=SEQUENCE_RETRY_ERRORS)
    current_app.logger.info(
        "Issued store credit %s for %s cents (org_id=%s, source=%s)",
        entry.credit_memo_number,
        entry.original_amount_cents,
        org_id,
        source_type,
    )
    return entry


# =============================================================================
# APPLY / VOID
# =============================================================================

def apply_credit(
    org_id: int,
    memo_or_id,
    amount_cents: int,
    operator_id: int,
    transaction_reference: str | None = None,
    register_reference: str | None = None,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> StoreCreditEntry:
    """
    Spend part (or all) of a credit entry.

    Raises:
        ValidationError: Non-positive amount
        NotFoundError: Entry absent or foreign
        InsufficientBalanceError: amount exceeds the remaining balance
        InvalidTransitionError: Entry voided, expired or past its expiry
    """
    _require_positive_cents(amount_cents)
    scope = TenantScope(org_id)

    def _op() -> StoreCreditEntry:
        applied_at = now or utcnow()
        entry = get_credit(org_id, memo_or_id)

        remaining_after = StoreCreditEntry.remaining_balance_cents - amount_cents
        stmt = (
            update(StoreCreditEntry)
            .where(
                StoreCreditEntry.id == entry.id,
                StoreCreditEntry.org_id == scope.org_id,
                StoreCreditEntry.remaining_balance_cents >= amount_cents,
                StoreCreditEntry.status.in_(APPLICABLE_STATUSES),
                or_(StoreCreditEntry.expires_at.is_(None), StoreCreditEntry.expires_at > applied_at),
            )
            .values(
                remaining_balance_cents=remaining_after,
                status=case(
                    (remaining_after == 0, CREDIT_STATUS_FULLY_USED),
                    else_=CREDIT_STATUS_PARTIALLY_USED,
                ),
                version_id=StoreCreditEntry.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)

        if not result.rowcount:
            db.session.refresh(entry)
            error = _diagnose_rejected_apply(entry, amount_cents, applied_at)
            db.session.rollback()
            raise error

        db.session.refresh(entry)
        db.session.add(
            StoreCreditUsage(
                org_id=scope.org_id,
                entry_id=entry.id,
                entry_type=USAGE_APPLY,
                amount_cents=amount_cents,
                balance_after_cents=entry.remaining_balance_cents,
                used_by_user_id=operator_id,
                used_at=applied_at,
                transaction_reference=transaction_reference,
                register_reference=register_reference,
                notes=notes,
            )
        )
        db.session.commit()
        return entry

    entry = run_with_retry(_op, attempts=WRITE_ATTEMPTS)
    current_app.logger.info(
        "Applied %s cents from store credit %s (org_id=%s, remaining=%s)",
        amount_cents,
        entry.credit_memo_number,
        org_id,
        entry.remaining_balance_cents,
    )
    return entry


def void_credit(
    org_id: int,
    memo_or_id,
    operator_id: int,
    reason: str,
    *,
    now: datetime | None = None,
) -> StoreCreditEntry:
    """
    Administratively void a credit entry, zeroing its balance.

    The removed balance is written as a usage row of type "void" so the
    ledger identity still holds.

    Raises:
        ValidationError: Missing reason
        InvalidTransitionError: Entry fully used (entry left unchanged)
        AlreadyResolvedError: Entry already voided
    """
    if not reason or not str(reason).strip():
        raise ValidationError("Void reason is required")
    reason = str(reason).strip()
    scope = TenantScope(org_id)

    def _op() -> StoreCreditEntry:
        voided_at = now or utcnow()
        entry = get_credit(org_id, memo_or_id)

        if entry.status == CREDIT_STATUS_VOIDED:
            raise AlreadyResolvedError(
                f"Store credit {entry.credit_memo_number} is already voided",
                current_status=entry.status,
                action="void",
            )
        if entry.status == CREDIT_STATUS_FULLY_USED:
            raise InvalidTransitionError(
                f"Cannot void fully used store credit {entry.credit_memo_number}",
                current_status=entry.status,
                action="void",
            )

        expected_status = entry.status
        expected_remaining = entry.remaining_balance_cents
        stmt = (
            update(StoreCreditEntry)
            .where(
                StoreCreditEntry.id == entry.id,
                StoreCreditEntry.org_id == scope.org_id,
                StoreCreditEntry.status == expected_status,
                StoreCreditEntry.remaining_balance_cents == expected_remaining,
            )
            .values(
                remaining_balance_cents=0,
                status=CREDIT_STATUS_VOIDED,
                voided_by_user_id=operator_id,
                voided_at=voided_at,
                void_reason=reason,
                version_id=StoreCreditEntry.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if not result.rowcount:
            db.session.rollback()
            raise InvalidTransitionError(
                f"Store credit {entry.credit_memo_number} was modified concurrently; reload and retry",
                current_status=expected_status,
                action="void",
            )

        if expected_remaining:
            db.session.add(
                StoreCreditUsage(
                    org_id=scope.org_id,
                    entry_id=entry.id,
                    entry_type=USAGE_VOID,
                    amount_cents=expected_remaining,
                    balance_after_cents=0,
                    used_by_user_id=operator_id,
                    used_at=voided_at,
                    notes=reason,
                )
            )
        db.session.commit()
        return entry

    entry = run_with_retry(_op, attempts=WRITE_ATTEMPTS)
    current_app.logger.info(
        "Voided store credit %s (org_id=%s): %s",
        entry.credit_memo_number,
        org_id,
        reason,
    )
    return entry


# =============================================================================
# BALANCES / LOOKUPS
# =============================================================================

def _spendable_query(scope: TenantScope, now: datetime):
    return scope.query(StoreCreditEntry).filter(
        StoreCreditEntry.status.in_(APPLICABLE_STATUSES),
        or_(StoreCreditEntry.expires_at.is_(None), StoreCreditEntry.expires_at > now),
    )


def customer_balance(org_id: int, customer_id: int, *, now: datetime | None = None) -> dict:
    """Spendable balance across a customer's active, unexpired entries."""
    scope = TenantScope(org_id)
    now = now or utcnow()
    entries = (
        _spendable_query(scope, now)
        .filter(StoreCreditEntry.customer_id == customer_id)
        .order_by(StoreCreditEntry.expires_at.is_(None), StoreCreditEntry.expires_at, StoreCreditEntry.id)
        .all()
    )
    return {
        "customer_id": customer_id,
        "total_balance_cents": sum(entry.remaining_balance_cents for entry in entries),
        "credits": [entry.to_dict() for entry in entries],
    }


def list_customer_credits(org_id: int, customer_id: int, *, include_inactive: bool = True) -> list[StoreCreditEntry]:
    scope = TenantScope(org_id)
    query = scope.query(StoreCreditEntry).filter(StoreCreditEntry.customer_id == customer_id)
    if not include_inactive:
        query = query.filter(StoreCreditEntry.status.in_(APPLICABLE_STATUSES))
    return query.order_by(StoreCreditEntry.issued_at.desc(), StoreCreditEntry.id.desc()).all()


def search_credits_by_contact(
    org_id: int,
    *,
    phone: str | None = None,
    email: str | None = None,
    spendable_only: bool = True,
    now: datetime | None = None,
) -> list[StoreCreditEntry]:
    """Look up credits by customer phone or email (walk-in customers have no id)."""
    phone = (phone or "").strip()
    email = (email or "").strip().lower()
    if not phone and not email:
        raise ValidationError("Phone or email is required")

    scope = TenantScope(org_id)
    query = _spendable_query(scope, now or utcnow()) if spendable_only else scope.query(StoreCreditEntry)

    conditions = []
    if phone:
        conditions.append(StoreCreditEntry.customer_phone == phone)
    if email:
        conditions.append(func.lower(StoreCreditEntry.customer_email) == email)
    return query.filter(or_(*conditions)).order_by(StoreCreditEntry.issued_at.desc()).all()


# =============================================================================
# MAINTENANCE
# =============================================================================

def sweep_expired(now: datetime | None = None, *, org_id: int | None = None) -> int:
    """
    Mark spendable entries past their expiry as expired.

    Idempotent: a second sweep at the same instant changes nothing.
    Balances are left as they were; expiry blocks spending, it is not usage.

    Returns:
        Number of entries expired by this sweep
    """
    now = now or utcnow()

    def _op() -> int:
        stmt = (
            update(StoreCreditEntry)
            .where(
                StoreCreditEntry.status.in_(APPLICABLE_STATUSES),
                StoreCreditEntry.expires_at.is_not(None),
                StoreCreditEntry.expires_at <= now,
            )
            .values(
                status=CREDIT_STATUS_EXPIRED,
                version_id=StoreCreditEntry.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if org_id is not None:
            stmt = stmt.where(StoreCreditEntry.org_id == org_id)
        result = db.session.execute(stmt)
        db.session.commit()
        return result.rowcount or 0

    count = run_with_retry(_op, attempts=WRITE_ATTEMPTS)
    current_app.logger.info("Expired %s store credit entries (org_id=%s)", count, org_id)
    return count
