# Overview: Per-tenant, per-month document number allocation (RMA and credit memo numbers).

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import period_key, utcnow


DOCUMENT_TYPE_RMA = "RMA"
DOCUMENT_TYPE_CREDIT_MEMO = "CREDIT_MEMO"

PREFIXES = {
    DOCUMENT_TYPE_RMA: "RMA",
    DOCUMENT_TYPE_CREDIT_MEMO: "CM",
}


def format_document_number(prefix: str, period: str, number: int, pad: int = 4) -> str:
    """RMA-202610-0001. Numbers past the pad width simply grow (RMA-202610-10000)."""
    return f"{prefix}-{period}-{number:0{pad}d}"


def next_document_number(
    *,
    org_id: int,
    document_type: str,
    prefix: str | None = None,
    at: datetime | None = None,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for an org/type/month bucket.

    The bucket row is incremented in place (UPDATE next_number = next_number + 1),
    which holds the row's write lock until the surrounding transaction ends.
    The first allocation in a bucket inserts the row; if another transaction
    inserted it first the flush raises IntegrityError.

    IMPORTANT: This runs inside the caller's transaction and never rolls back
    on its own. Callers wrap their whole unit of work in
    run_with_retry(..., retry_on=SEQUENCE_RETRY_ERRORS) so a lost insert race
    rolls back and re-runs everything, and a number is never consumed by work
    that did not commit.
    """
    if not org_id:
        raise ValidationError("org_id is required")
    if not document_type:
        raise ValidationError("document_type is required")

    prefix = prefix or PREFIXES.get(document_type)
    if not prefix:
        raise ValidationError(f"No prefix configured for document type {document_type}")

    period = period_key(at or utcnow())

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.org_id == org_id,
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(org_id=org_id, document_type=document_type, period=period)
            .scalar()
        )
        number = current - 1
    else:
        seq = DocumentSequence(
            org_id=org_id,
            document_type=document_type,
            period=period,
            next_number=2,
        )
        db.session.add(seq)
        db.session.flush()
        number = 1

    return format_document_number(prefix, period, number, pad)
