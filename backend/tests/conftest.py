"""
Pytest fixtures for rma_ledger tests.

Provides the in-memory database app, tenant fixtures, catalog/sale source
records with compliance data, and disposal reporter injection.
"""

from datetime import date

import pytest

from rma_ledger import create_app
from rma_ledger.errors import ExternalServiceError
from rma_ledger.extensions import db
from rma_ledger.models import Organization, Product, Sale, SaleLine
from rma_ledger.services import return_service
from rma_ledger.services.disposal_service import DisposalReporter, MockDisposalReporter


OPERATOR_ID = 7
MANAGER_ID = 9

SALE_TRACKING_ID = "1A4FF0100000022000000101"
LIVE_TRACKING_ID = "1A4FF0100000022000000201"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DISPOSAL_REPORTER': 'mock',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        app.config['ALLOW_CREDIT_ABOVE_RETURN_VALUE'] = False
        app.config['DEFAULT_CREDIT_EXPIRATION_MONTHS'] = None


# =============================================================================
# DISPOSAL REPORTERS
# =============================================================================

class UnreachableDisposalReporter(DisposalReporter):
    """Reporter whose remote end is down."""

    name = "unreachable"

    def __init__(self):
        self.calls = 0

    def report_bulk_waste(self, records):
        self.calls += 1
        raise ExternalServiceError("Disposal reporting unreachable: connection refused")

    def test_connection(self):
        raise ExternalServiceError("Disposal reporting unreachable: connection refused")


@pytest.fixture(scope='function')
def mock_reporter(app):
    """Install a MockDisposalReporter the test can inspect."""
    reporter = MockDisposalReporter()
    app.extensions['disposal_reporter'] = reporter
    yield reporter
    app.extensions['disposal_reporter'] = None


@pytest.fixture(scope='function')
def unreachable_reporter(app):
    """Install a reporter that always fails."""
    reporter = UnreachableDisposalReporter()
    app.extensions['disposal_reporter'] = reporter
    yield reporter
    app.extensions['disposal_reporter'] = None


# =============================================================================
# TENANTS
# =============================================================================

@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    org = Organization(name="Org A - Green Leaf", code="GLEAF", license_number="C10-0000001-LIC", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    org = Organization(name="Org B - High Desert", code="HDES", license_number="C10-0000002-LIC", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


# =============================================================================
# SOURCE RECORDS
# =============================================================================

@pytest.fixture(scope='function')
def flower_a(db_session, org_a):
    """Flower product in Org A; live values differ from what was sold."""
    product = Product(
        org_id=org_a.id,
        sku="FLW-BD-35",
        name="Blue Dream 3.5g",
        price_cents=1500,
        batch_number="LIVE-BATCH-2",
        state_tracking_id=LIVE_TRACKING_ID,
        category="flower",
        strain_type="hybrid",
        strain_name="Blue Dream",
        thc_content=22.5,
        cbd_content=0.1,
        thc_mg=787.5,
        cbd_mg=3.5,
        unit="Grams",
        weight_grams=3.5,
        licensed_producer="Valley Farms",
        producer_license="CCL-0001",
        packaged_date=date(2026, 8, 1),
        harvest_date=date(2026, 6, 15),
        lab_test_date=date(2026, 7, 20),
        lab_tested=True,
        lab_test_result="pass",
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def edible_a(db_session, org_a):
    """Edible product in Org A with no state tracking id."""
    product = Product(
        org_id=org_a.id,
        sku="EDB-GUM-10",
        name="Gummies 10pk",
        price_cents=1000,
        category="edible",
        thc_mg=100.0,
        cbd_mg=0.0,
        unit="Each",
        weight_grams=40.0,
        lab_tested=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session, org_b):
    """Product in Org B."""
    product = Product(org_id=org_b.id, sku="FLW-OG-35", name="OG Kush 3.5g", price_cents=2000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def sale_a(db_session, org_a, flower_a, edible_a):
    """Invoice in Org A with compliance values frozen at sale time."""
    sale = Sale(
        org_id=org_a.id,
        invoice_number="INV-1001",
        customer_id=42,
        customer_name="Jane Doe",
        customer_email="jane@example.com",
        customer_phone="555-0100",
    )
    db_session.add(sale)
    db_session.flush()

    db_session.add_all([
        SaleLine(
            sale_id=sale.id,
            product_id=flower_a.id,
            name="Blue Dream 3.5g",
            sku="FLW-BD-35",
            quantity=2,
            unit_price_cents=1400,
            batch_number="SALE-BATCH-1",
            state_tracking_id=SALE_TRACKING_ID,
            category="flower",
            strain_type="hybrid",
            strain_name="Blue Dream",
            thc_content=21.0,
            cbd_content=0.1,
            thc_mg=735.0,
            cbd_mg=3.5,
            unit="Grams",
            weight_grams=3.5,
            licensed_producer="Valley Farms",
            producer_license="CCL-0001",
            packaged_date=date(2026, 5, 1),
            harvest_date=date(2026, 3, 15),
            lab_test_date=date(2026, 4, 20),
            lab_tested=True,
            lab_test_result="pass",
        ),
        SaleLine(
            sale_id=sale.id,
            product_id=edible_a.id,
            name="Gummies 10pk",
            sku="EDB-GUM-10",
            quantity=1,
            unit_price_cents=1000,
            category="edible",
            thc_mg=100.0,
            cbd_mg=0.0,
            unit="Each",
            weight_grams=40.0,
            lab_tested=True,
        ),
    ])
    db_session.commit()
    return sale


@pytest.fixture(scope='function')
def sale_b(db_session, org_b, product_b):
    """Invoice in Org B."""
    sale = Sale(org_id=org_b.id, invoice_number="INV-1001", customer_name="Sam Roe")
    db_session.add(sale)
    db_session.flush()
    db_session.add(SaleLine(sale_id=sale.id, product_id=product_b.id, name="OG Kush 3.5g", quantity=1, unit_price_cents=2000))
    db_session.commit()
    return sale


# =============================================================================
# RETURN REQUESTS
# =============================================================================

@pytest.fixture(scope='function')
def make_return(db_session, org_a, flower_a):
    """Factory: create a pending return in Org A (10.00 + 15.00 by default)."""
    def _make(**overrides):
        kwargs = {
            "items": [
                {"product_name": "Vape Cartridge 1g", "quantity": 1, "unit_price_cents": 1000},
                {"product_id": flower_a.id, "quantity": 1, "unit_price_cents": 1500},
            ],
            "return_reason": "quality_issue",
            "detailed_reason": "Package seal broken on arrival",
            "customer_name": "Jane Doe",
            "customer_id": 42,
        }
        org_id = overrides.pop("org_id", org_a.id)
        kwargs.update(overrides)
        return return_service.create_return(org_id, OPERATOR_ID, **kwargs)
    return _make


@pytest.fixture(scope='function')
def inspected_return(make_return, org_a):
    """A return walked through approval, receipt and inspection."""
    rr = make_return()
    return_service.approve(org_a.id, rr.id, MANAGER_ID)
    return_service.mark_received(org_a.id, rr.id, OPERATOR_ID)
    return_service.start_inspection(org_a.id, rr.id, OPERATOR_ID)
    return_service.complete_inspection(org_a.id, rr.id, OPERATOR_ID, "confirmed_defective", "Seal torn")
    return rr


@pytest.fixture(scope='function')
def resolved_sale_return(db_session, org_a, sale_a):
    """Resolved (refund) return of both lines of sale_a."""
    flower_line, edible_line = sale_a.lines
    rr = return_service.create_return(
        org_a.id,
        OPERATOR_ID,
        items=[
            {"sale_line_id": flower_line.id, "quantity": 2, "condition": "defective"},
            {"product_id": edible_line.product_id, "quantity": 1},
        ],
        return_reason="quality_issue",
        detailed_reason="Mold visible",
        related_sale_id=sale_a.id,
    )
    return_service.approve(org_a.id, rr.id, MANAGER_ID)
    return_service.mark_received(org_a.id, rr.id, OPERATOR_ID)
    return_service.complete_inspection(org_a.id, rr.id, OPERATOR_ID, "confirmed_defective")
    return_service.resolve(org_a.id, rr.id, MANAGER_ID, "refund")
    return rr
