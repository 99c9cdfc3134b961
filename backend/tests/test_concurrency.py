# Overview: Threaded concurrency tests against a real SQLite file.

"""
Scripted concurrency tests for the return workflow and store credit ledger.

Each worker thread runs in its own app context (own session, own
connection) against a temporary SQLite file, so writes genuinely contend.

Run with:
    python -m pytest backend/tests/test_concurrency.py
"""
import os
import tempfile
import threading
import unittest

from rma_ledger import create_app
from rma_ledger.errors import AlreadyResolvedError, InsufficientBalanceError, InvalidTransitionError
from rma_ledger.extensions import db
from rma_ledger.models import Organization, ReturnRequest, StoreCreditEntry, StoreCreditUsage
from rma_ledger.services import return_service, store_credit_service
from rma_ledger.time_utils import period_key, utcnow


OPERATOR_ID = 7
CUSTOMER = {"customer_id": 42, "customer_name": "Jane Doe"}


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            org = Organization(name="Concurrency Org", code="CONC", is_active=True)
            db.session.add(org)
            db.session.commit()
            self.org_id = org.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, count):
        results = []
        lock = threading.Lock()

        def worker(index):
            with self.app.app_context():
                try:
                    value = target(index)
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _inspected_return(self):
        with self.app.app_context():
            rr = return_service.create_return(
                self.org_id,
                OPERATOR_ID,
                items=[
                    {"product_name": "Vape Cartridge 1g", "quantity": 1, "unit_price_cents": 1000},
                    {"product_name": "Blue Dream 3.5g", "quantity": 1, "unit_price_cents": 1500},
                ],
                return_reason="quality_issue",
                detailed_reason="Leaking cartridge",
                customer_name="Jane Doe",
                customer_id=42,
            )
            return_service.approve(self.org_id, rr.id, OPERATOR_ID)
            return_service.mark_received(self.org_id, rr.id, OPERATOR_ID)
            return_service.complete_inspection(self.org_id, rr.id, OPERATOR_ID, "confirmed_defective")
            return rr.id

    def test_concurrent_credit_issue_gets_sequential_memos(self):
        def issue(index):
            entry = store_credit_service.issue_credit(self.org_id, dict(CUSTOMER), 500, "manual", OPERATOR_ID)
            return entry.credit_memo_number

        results = self._run_threads(issue, 2)

        errors = [r for r in results if isinstance(r, Exception)]
        self.assertFalse(errors)
        period = period_key(utcnow())
        self.assertEqual(sorted(results), [f"CM-{period}-0001", f"CM-{period}-0002"])

    def test_concurrent_return_creation_numbers_unique(self):
        def create(index):
            rr = return_service.create_return(
                self.org_id,
                OPERATOR_ID,
                items=[{"product_name": f"Item {index}", "quantity": 1, "unit_price_cents": 100 + index}],
                return_reason="damaged",
                detailed_reason="Crushed in transit",
                customer_name="Jane Doe",
            )
            return rr.rma_number

        results = self._run_threads(create, 6)

        errors = [r for r in results if isinstance(r, Exception)]
        self.assertFalse(errors)
        period = period_key(utcnow())
        self.assertEqual(sorted(results), [f"RMA-{period}-{n:04d}" for n in range(1, 7)])

    def test_concurrent_resolve_only_one_wins(self):
        return_id = self._inspected_return()
        resolution_types = ["store_credit", "refund", "store_credit", "refund"]

        def resolve(index):
            return_service.resolve(self.org_id, return_id, OPERATOR_ID, resolution_types[index])
            return "resolved"

        results = self._run_threads(resolve, len(resolution_types))

        self.assertEqual(results.count("resolved"), 1)
        failures = [r for r in results if r != "resolved"]
        for failure in failures:
            self.assertIsInstance(failure, AlreadyResolvedError)

        with self.app.app_context():
            rr = db.session.get(ReturnRequest, return_id)
            self.assertEqual(rr.status, "resolved")
            credits = db.session.query(StoreCreditEntry).count()
            self.assertEqual(credits, 1 if rr.resolution_type == "store_credit" else 0)

    def test_concurrent_apply_never_overdraws(self):
        with self.app.app_context():
            entry = store_credit_service.issue_credit(self.org_id, dict(CUSTOMER), 2500, "manual", OPERATOR_ID)
            entry_id = entry.id

        def apply(index):
            store_credit_service.apply_credit(self.org_id, entry_id, 1000, OPERATOR_ID, f"SALE-{index}")
            return "applied"

        results = self._run_threads(apply, 5)

        self.assertEqual(results.count("applied"), 2)
        for failure in [r for r in results if r != "applied"]:
            self.assertIsInstance(failure, (InsufficientBalanceError, InvalidTransitionError))

        with self.app.app_context():
            entry = db.session.get(StoreCreditEntry, entry_id)
            used = sum(u.amount_cents for u in db.session.query(StoreCreditUsage).filter_by(entry_id=entry_id))
            self.assertEqual(entry.remaining_balance_cents, 500)
            self.assertEqual(entry.remaining_balance_cents + used, entry.original_amount_cents)
            self.assertEqual(entry.status, "partially_used")

    def test_concurrent_void_and_apply(self):
        with self.app.app_context():
            entry = store_credit_service.issue_credit(self.org_id, dict(CUSTOMER), 2500, "manual", OPERATOR_ID)
            entry_id = entry.id

        def act(index):
            if index == 0:
                store_credit_service.void_credit(self.org_id, entry_id, OPERATOR_ID, "Fraud review")
                return "voided"
            store_credit_service.apply_credit(self.org_id, entry_id, 1000, OPERATOR_ID)
            return "applied"

        results = self._run_threads(act, 3)

        for result in results:
            if isinstance(result, Exception):
                self.assertIsInstance(result, (InvalidTransitionError, InsufficientBalanceError))

        with self.app.app_context():
            entry = db.session.get(StoreCreditEntry, entry_id)
            used = sum(u.amount_cents for u in db.session.query(StoreCreditUsage).filter_by(entry_id=entry_id))
            self.assertGreaterEqual(entry.remaining_balance_cents, 0)
            self.assertEqual(entry.remaining_balance_cents + used, entry.original_amount_cents)


if __name__ == "__main__":
    unittest.main()
