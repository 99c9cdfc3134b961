# Overview: Pytest coverage for compliance snapshot extraction on return lines.

"""
Compliance Snapshot Tests

Source precedence: sale line > live product > placeholders.
"""

from datetime import date

import pytest

from rma_ledger.errors import NotFoundError, ValidationError
from rma_ledger.models import Product
from rma_ledger.models.compliance import UNKNOWN
from rma_ledger.services import compliance_service
from rma_ledger.services.compliance_service import build_return_lines

from conftest import LIVE_TRACKING_ID, SALE_TRACKING_ID


class TestSourcePrecedence:

    def test_sale_line_values_win_over_live_product(self, db_session, org_a, sale_a, flower_a):
        flower_line = sale_a.lines[0]
        [line] = build_return_lines(org_a.id, [{"product_id": flower_a.id, "quantity": 1}], sale_a.id)

        assert line.compliance_source == "sale"
        assert line.sale_line_id == flower_line.id
        assert line.product_id == flower_a.id
        assert line.state_tracking_id == SALE_TRACKING_ID
        assert line.batch_number == "SALE-BATCH-1"
        assert line.thc_content == 21.0
        assert line.packaged_date == date(2026, 5, 1)
        assert line.lab_tested is True

    def test_sale_line_price_wins_over_item_price(self, db_session, org_a, sale_a):
        [line] = build_return_lines(
            org_a.id,
            [{"sale_line_id": sale_a.lines[0].id, "quantity": 2, "unit_price_cents": 99}],
            sale_a.id,
        )
        assert line.unit_price_cents == 1400
        assert line.line_value_cents == 2800

    def test_live_product_without_sale(self, db_session, org_a, flower_a):
        [line] = build_return_lines(org_a.id, [{"product_id": flower_a.id, "quantity": 1}])
        assert line.compliance_source == "product"
        assert line.state_tracking_id == LIVE_TRACKING_ID
        assert line.batch_number == "LIVE-BATCH-2"
        assert line.unit_price_cents == 1500
        assert line.product_name == "Blue Dream 3.5g"

    def test_item_price_wins_over_product_price(self, db_session, org_a, flower_a):
        [line] = build_return_lines(org_a.id, [{"product_id": flower_a.id, "quantity": 1, "unit_price_cents": 1200}])
        assert line.unit_price_cents == 1200

    def test_product_not_on_sale_falls_back_to_product(self, db_session, org_a, sale_a):
        extra = Product(org_id=org_a.id, sku="TOP-01", name="Topical", price_cents=2200, batch_number="TOP-B1")
        db_session.add(extra)
        db_session.commit()

        [line] = build_return_lines(org_a.id, [{"product_id": extra.id, "quantity": 1}], sale_a.id)
        assert line.compliance_source == "product"
        assert line.batch_number == "TOP-B1"

    def test_placeholders_without_any_source(self, db_session, org_a):
        [line] = build_return_lines(org_a.id, [{"product_name": "Mystery jar", "quantity": 1, "unit_price_cents": 500}])
        assert line.compliance_source == "placeholder"
        assert line.batch_number == UNKNOWN
        assert line.state_tracking_id == UNKNOWN
        assert line.thc_mg == 0.0
        assert line.harvest_date is None
        assert line.lab_tested is False

    def test_missing_source_fields_get_placeholders(self, db_session, org_a, edible_a):
        [line] = build_return_lines(org_a.id, [{"product_id": edible_a.id, "quantity": 1}])
        assert line.compliance_source == "product"
        assert line.state_tracking_id == UNKNOWN
        assert line.thc_mg == 100.0
        assert line.thc_content == 0.0

    def test_lines_keep_item_order(self, db_session, org_a, flower_a, edible_a):
        lines = build_return_lines(
            org_a.id,
            [{"product_id": edible_a.id, "quantity": 1}, {"product_id": flower_a.id, "quantity": 2}],
        )
        assert [line.position for line in lines] == [0, 1]
        assert [line.product_id for line in lines] == [edible_a.id, flower_a.id]


class TestFailures:

    def test_extraction_failure_is_logged_and_placeholdered(self, db_session, org_a, flower_a, monkeypatch, caplog):
        def _broken(source):
            raise RuntimeError("corrupt potency record")

        monkeypatch.setattr(compliance_service, "snapshot_from", _broken)
        with caplog.at_level("ERROR"):
            [line] = build_return_lines(org_a.id, [{"product_id": flower_a.id, "quantity": 1}])

        assert line.compliance_source == "placeholder"
        assert line.batch_number == UNKNOWN
        assert line.unit_price_cents == 1500
        assert "Failed to copy compliance snapshot" in caplog.text

    def test_unknown_sale_line(self, db_session, org_a, sale_a):
        with pytest.raises(ValidationError):
            build_return_lines(org_a.id, [{"sale_line_id": 99999, "quantity": 1}], sale_a.id)

    def test_unknown_product_gets_placeholders(self, db_session, org_a, flower_a, caplog):
        with caplog.at_level("WARNING"):
            lines = build_return_lines(org_a.id, [
                {"product_id": flower_a.id, "quantity": 1},
                {"product_id": 999999, "product_name": "Discontinued", "quantity": 1, "unit_price_cents": 700},
            ])

        assert [line.compliance_source for line in lines] == ["product", "placeholder"]
        assert lines[1].product_id is None
        assert lines[1].product_name == "Discontinued"
        assert lines[1].unit_price_cents == 700
        assert lines[1].state_tracking_id == UNKNOWN
        assert "unknown product 999999" in caplog.text

    def test_foreign_product_data_is_not_copied(self, db_session, org_a, product_b):
        [line] = build_return_lines(
            org_a.id,
            [{"product_id": product_b.id, "product_name": "Other shop item", "quantity": 1, "unit_price_cents": 100}],
        )
        assert line.compliance_source == "placeholder"
        assert line.product_id is None

    def test_foreign_product_without_name_or_price(self, db_session, org_a, product_b):
        with pytest.raises(ValidationError):
            build_return_lines(org_a.id, [{"product_id": product_b.id, "quantity": 1}])

    def test_foreign_sale(self, db_session, org_a, sale_b):
        with pytest.raises(NotFoundError):
            build_return_lines(org_a.id, [{"product_name": "X", "quantity": 1, "unit_price_cents": 1}], sale_b.id)

    @pytest.mark.parametrize("item", [
        {"product_name": "X", "quantity": 0, "unit_price_cents": 100},
        {"product_name": "X", "quantity": 1.5, "unit_price_cents": 100},
        {"product_name": "X", "quantity": 1, "unit_price_cents": -1},
        {"product_name": "X", "quantity": 1, "unit_price_cents": 100, "condition": "opened"},
        {"product_name": "X", "quantity": 1},
        {"quantity": 1, "unit_price_cents": 100},
    ])
    def test_invalid_items(self, db_session, org_a, item):
        with pytest.raises(ValidationError):
            build_return_lines(org_a.id, [item])

    def test_condition_defaults_to_unopened(self, db_session, org_a):
        [line] = build_return_lines(org_a.id, [{"product_name": "X", "quantity": 1, "unit_price_cents": 100}])
        assert line.condition == "unopened"
