# Overview: Pytest coverage for per-tenant monthly document numbering.

from datetime import datetime

import pytest

from rma_ledger.errors import ValidationError
from rma_ledger.extensions import db
from rma_ledger.models import DocumentSequence
from rma_ledger.services.sequence_service import (
    DOCUMENT_TYPE_CREDIT_MEMO,
    DOCUMENT_TYPE_RMA,
    format_document_number,
    next_document_number,
)


OCT = datetime(2026, 10, 19, 9, 30)
NOV = datetime(2026, 11, 1, 0, 0)


def allocate(org_id, document_type=DOCUMENT_TYPE_RMA, at=OCT):
    number = next_document_number(org_id=org_id, document_type=document_type, at=at)
    db.session.commit()
    return number


def test_format_document_number():
    assert format_document_number("RMA", "202610", 1) == "RMA-202610-0001"
    assert format_document_number("CM", "202610", 12345) == "CM-202610-12345"


def test_first_allocation_creates_bucket(db_session, org_a):
    assert allocate(org_a.id) == "RMA-202610-0001"
    seq = db_session.query(DocumentSequence).one()
    assert (seq.org_id, seq.document_type, seq.period, seq.next_number) == (org_a.id, "RMA", "202610", 2)


def test_strictly_increasing_within_bucket(db_session, org_a):
    numbers = [allocate(org_a.id) for _ in range(5)]
    assert numbers == [f"RMA-202610-{n:04d}" for n in range(1, 6)]


def test_buckets_are_independent(db_session, org_a, org_b):
    allocate(org_a.id)
    allocate(org_a.id)
    assert allocate(org_b.id) == "RMA-202610-0001"
    assert allocate(org_a.id, DOCUMENT_TYPE_CREDIT_MEMO) == "CM-202610-0001"
    assert allocate(org_a.id, at=NOV) == "RMA-202611-0001"


def test_rollback_releases_the_number(db_session, org_a):
    allocate(org_a.id)
    next_document_number(org_id=org_a.id, document_type=DOCUMENT_TYPE_RMA, at=OCT)
    db.session.rollback()
    assert allocate(org_a.id) == "RMA-202610-0002"


def test_requires_known_type(db_session, org_a):
    with pytest.raises(ValidationError):
        next_document_number(org_id=org_a.id, document_type="PACKING_SLIP")
    with pytest.raises(ValidationError):
        next_document_number(org_id=None, document_type=DOCUMENT_TYPE_RMA)
