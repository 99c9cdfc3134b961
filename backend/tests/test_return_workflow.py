# Overview: Pytest coverage for the pure return request state machine.

"""
Return Workflow Tests

transition() is pure: every rule is checked with plain WorkflowState values,
no database or app context.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest

from rma_ledger.errors import AlreadyResolvedError, InvalidTransitionError, ValidationError
from rma_ledger.services import return_workflow as wf


NOW = datetime(2026, 10, 19, 12, 0, 0)


def state(status, **kwargs):
    kwargs.setdefault("total_value_cents", 2500)
    kwargs.setdefault("rma_number", "RMA-202610-0001")
    return wf.WorkflowState(status=status, **kwargs)


def run(current, event, **payload):
    payload.setdefault("operator_id", 7)
    payload.setdefault("now", NOW)
    return wf.transition(current, event, payload)


class TestHappyPath:
    """Each legal edge moves to the expected status and records who/when."""

    def test_approve(self):
        result = run(state(wf.STATUS_PENDING_APPROVAL), wf.EVENT_APPROVE)
        assert result.status == wf.STATUS_APPROVED
        assert result.changes == {"approved_by_user_id": 7, "approved_at": NOW}

    def test_reject_requires_reason(self):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_PENDING_APPROVAL), wf.EVENT_REJECT, reason="  ")

        result = run(state(wf.STATUS_PENDING_APPROVAL), wf.EVENT_REJECT, reason="Outside return window")
        assert result.status == wf.STATUS_REJECTED
        assert result.changes["rejection_reason"] == "Outside return window"

    def test_receive_and_inspect(self):
        assert run(state(wf.STATUS_APPROVED), wf.EVENT_RECEIVE).status == wf.STATUS_RECEIVED
        assert run(state(wf.STATUS_RECEIVED), wf.EVENT_START_INSPECTION).status == wf.STATUS_INSPECTING

        result = run(state(wf.STATUS_INSPECTING), wf.EVENT_COMPLETE_INSPECTION, result="acceptable", notes="ok")
        assert result.status == wf.STATUS_INSPECTED
        assert result.changes["inspection_result"] == "acceptable"
        assert result.changes["inspection_notes"] == "ok"

    def test_inspection_can_complete_straight_from_received(self):
        result = run(state(wf.STATUS_RECEIVED), wf.EVENT_COMPLETE_INSPECTION, result="customer_error")
        assert result.status == wf.STATUS_INSPECTED

    def test_inspection_result_must_be_known(self):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_INSPECTING), wf.EVENT_COMPLETE_INSPECTION, result="looks fine")

    def test_close(self):
        result = run(state(wf.STATUS_RESOLVED, resolution_type="refund"), wf.EVENT_CLOSE)
        assert result.status == wf.STATUS_CLOSED


class TestIllegalTransitions:

    @pytest.mark.parametrize("status", [
        wf.STATUS_PENDING_APPROVAL,
        wf.STATUS_APPROVED,
        wf.STATUS_REJECTED,
        wf.STATUS_CLOSED,
        wf.STATUS_CANCELLED,
    ])
    def test_complete_inspection_before_receipt(self, status):
        with pytest.raises(InvalidTransitionError) as exc_info:
            run(state(status), wf.EVENT_COMPLETE_INSPECTION, result="acceptable")
        assert exc_info.value.current_status == status
        assert exc_info.value.action == wf.EVENT_COMPLETE_INSPECTION

    def test_approve_twice(self):
        with pytest.raises(InvalidTransitionError):
            run(state(wf.STATUS_APPROVED), wf.EVENT_APPROVE)

    def test_receive_without_approval(self):
        with pytest.raises(InvalidTransitionError):
            run(state(wf.STATUS_PENDING_APPROVAL), wf.EVENT_RECEIVE)

    def test_close_before_resolution(self):
        with pytest.raises(InvalidTransitionError):
            run(state(wf.STATUS_INSPECTED), wf.EVENT_CLOSE)

    def test_unknown_event(self):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_PENDING_APPROVAL), "teleport")


class TestResolve:

    def test_store_credit_defaults_to_total_and_issues_credit(self):
        result = run(state(wf.STATUS_INSPECTED), wf.EVENT_RESOLVE, resolution_type="store_credit")
        assert result.status == wf.STATUS_RESOLVED
        assert result.changes["credit_amount_cents"] == 2500
        assert result.effects == (wf.EFFECT_ISSUE_STORE_CREDIT,)

    def test_refund_has_no_side_effects(self):
        result = run(state(wf.STATUS_INSPECTED), wf.EVENT_RESOLVE, resolution_type="refund", amount_cents=1000)
        assert result.changes["refund_amount_cents"] == 1000
        assert result.effects == ()

    def test_replacement_requires_reference(self):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_INSPECTED), wf.EVENT_RESOLVE, resolution_type="replacement")

        result = run(
            state(wf.STATUS_INSPECTED),
            wf.EVENT_RESOLVE,
            resolution_type="replacement",
            replacement_order_reference="PO-77",
        )
        assert result.changes["replacement_order_reference"] == "PO-77"

    def test_amount_above_return_value_rejected_unless_allowed(self):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_INSPECTED), wf.EVENT_RESOLVE, resolution_type="refund", amount_cents=2501)

        result = run(
            state(wf.STATUS_INSPECTED),
            wf.EVENT_RESOLVE,
            resolution_type="refund",
            amount_cents=2501,
            allow_above_return_value=True,
        )
        assert result.changes["refund_amount_cents"] == 2501

    @pytest.mark.parametrize("amount", [0, -100, 12.5, True])
    def test_amount_must_be_positive_cents(self, amount):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_INSPECTED), wf.EVENT_RESOLVE, resolution_type="store_credit", amount_cents=amount)

    def test_unknown_resolution_type(self):
        with pytest.raises(ValidationError):
            run(state(wf.STATUS_INSPECTED), wf.EVENT_RESOLVE, resolution_type="cash")

    def test_second_resolve_is_already_resolved(self):
        resolved = state(wf.STATUS_RESOLVED, resolution_type="refund")
        with pytest.raises(AlreadyResolvedError):
            run(resolved, wf.EVENT_RESOLVE, resolution_type="store_credit")

    def test_resolve_after_close_is_already_resolved(self):
        closed = state(wf.STATUS_CLOSED, resolution_type="store_credit")
        with pytest.raises(AlreadyResolvedError):
            run(closed, wf.EVENT_RESOLVE, resolution_type="refund")

    def test_resolve_before_inspection(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            run(state(wf.STATUS_RECEIVED), wf.EVENT_RESOLVE, resolution_type="refund")
        assert not isinstance(exc_info.value, AlreadyResolvedError)


class TestCancel:

    def test_pending_can_be_cancelled_by_anyone(self):
        result = run(state(wf.STATUS_PENDING_APPROVAL), wf.EVENT_CANCEL, reason="Customer changed mind")
        assert result.status == wf.STATUS_CANCELLED
        assert result.changes["cancellation_reason"] == "Customer changed mind"

    @pytest.mark.parametrize("status", [
        wf.STATUS_APPROVED,
        wf.STATUS_RECEIVED,
        wf.STATUS_INSPECTING,
        wf.STATUS_INSPECTED,
    ])
    def test_after_approval_requires_elevated(self, status):
        with pytest.raises(InvalidTransitionError):
            run(state(status), wf.EVENT_CANCEL)
        assert run(state(status), wf.EVENT_CANCEL, elevated=True).status == wf.STATUS_CANCELLED

    @pytest.mark.parametrize("status", [wf.STATUS_RESOLVED, wf.STATUS_CLOSED, wf.STATUS_REJECTED])
    def test_never_after_resolution(self, status):
        with pytest.raises(InvalidTransitionError):
            run(state(status, resolution_type="refund"), wf.EVENT_CANCEL, elevated=True)


class TestDestroy:

    def test_records_disposal_without_moving_status(self):
        result = run(
            state(wf.STATUS_RESOLVED, resolution_type="refund"),
            wf.EVENT_DESTROY,
            method="incineration",
            witness_name="Pat Lee",
        )
        assert result.status == wf.STATUS_RESOLVED
        assert result.changes["destroyed_at"] == NOW
        assert result.effects == (wf.EFFECT_REPORT_DISPOSAL,)

    def test_only_once(self):
        destroyed = state(wf.STATUS_RESOLVED, resolution_type="refund", destroyed_at=NOW)
        with pytest.raises(AlreadyResolvedError):
            run(destroyed, wf.EVENT_DESTROY, method="incineration", witness_name="Pat Lee")

    def test_only_from_resolved(self):
        with pytest.raises(InvalidTransitionError):
            run(state(wf.STATUS_INSPECTED), wf.EVENT_DESTROY, method="incineration", witness_name="Pat Lee")

    def test_method_and_witness_required(self):
        resolved = state(wf.STATUS_RESOLVED, resolution_type="refund")
        with pytest.raises(ValidationError):
            run(resolved, wf.EVENT_DESTROY, method="", witness_name="Pat Lee")
        with pytest.raises(ValidationError):
            run(resolved, wf.EVENT_DESTROY, method="incineration")


class TestNonTransitionRules:

    def test_items_editable_only_before_receipt(self):
        wf.check_update(state(wf.STATUS_APPROVED), ["items", "customer_name"])
        with pytest.raises(InvalidTransitionError):
            wf.check_update(state(wf.STATUS_RECEIVED), ["items"])

    def test_internal_notes_always_editable(self):
        wf.check_update(state(wf.STATUS_CLOSED), ["internal_notes"])

    def test_workflow_fields_never_editable(self):
        with pytest.raises(ValidationError):
            wf.check_update(state(wf.STATUS_PENDING_APPROVAL), ["status"])

    def test_status_label_folds_resolution(self):
        assert wf.status_label(wf.STATUS_RESOLVED, "store_credit") == "Credit Issued"
        assert wf.status_label(wf.STATUS_RESOLVED, "refund") == "Refund Processing"
        assert wf.status_label(wf.STATUS_PENDING_APPROVAL) == "Pending Approval"

    def test_destruction_totals_multiply_by_quantity(self):
        lines = [
            SimpleNamespace(quantity=2, weight_grams=3.5, thc_mg=735.0, cbd_mg=3.5),
            SimpleNamespace(quantity=1, weight_grams=None, thc_mg=100.0, cbd_mg=None),
        ]
        assert wf.destruction_totals(lines) == {
            "total_weight_destroyed_grams": 7.0,
            "total_thc_destroyed_mg": 1570.0,
            "total_cbd_destroyed_mg": 7.0,
        }
