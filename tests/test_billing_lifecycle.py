"""Tests for bill status transitions, edit locks, history and versioning."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from hospital_billing.models.billing import BillStatusHistory
from hospital_billing.services.billing_errors import (
    BillLockedError,
    BillStateError,
    ConcurrencyConflictError,
    ValidationError,
)
from hospital_billing.services.billing_lifecycle import (
    can_transition,
    effective_status,
    is_overdue,
    transition,
)
from hospital_billing.services.billing_payments import apply_payment
from hospital_billing.services.billing_service import (
    add_item,
    apply_discount,
    bill_history,
    create_bill,
    issue_bill,
    list_bills,
    reassign,
    recalculate,
    remove_item,
    set_tax_rate,
    update_item,
    void_bill,
)
from hospital_billing.services.billing_store import load_bill, save_bill


def _make_bill(db, issue=True, **kw):
    args = dict(
        patient_id=1,
        items=[{"description": "Consultation", "unit_price": Decimal("100")}],
        issue=issue,
    )
    args.update(kw)
    return create_bill(db, **args)


def _history(db, bill, field=None):
    rows = bill_history(db, bill.id)
    if field:
        rows = [r for r in rows if r.field_name == field]
    return rows


class TestTransitions:
    """Allowed and refused status moves."""

    @pytest.mark.parametrize(
        "current, to, allowed",
        [
            ("draft", "pending", True),
            ("pending", "paid", True),
            ("paid", "partial", True),
            ("partial", "pending", True),
            ("pending", "draft", False),
            ("void", "pending", False),
            ("void", "paid", False),
        ],
    )
    def test_table(self, current, to, allowed):
        assert can_transition(current, to) is allowed

    def test_same_state_is_no_op(self, db):
        bill = _make_bill(db)
        before = len(_history(db, bill, "status"))
        assert transition(db, bill, "pending") is None
        db.flush()
        assert len(_history(db, bill, "status")) == before

    def test_illegal_move_raises(self, db):
        bill = _make_bill(db)
        with pytest.raises(BillStateError):
            transition(db, bill, "draft")

    def test_creation_and_issue_are_recorded(self, db):
        bill = _make_bill(db, issue=False)
        issue_bill(db, bill.id, user_id=4)
        rows = _history(db, bill, "status")
        assert [(r.status_from, r.status_to) for r in rows] == [
            (None, "draft"),
            ("draft", "pending"),
        ]
        assert rows[1].changed_by == 4

    def test_issue_only_from_draft(self, db):
        bill = _make_bill(db)
        with pytest.raises(BillStateError):
            issue_bill(db, bill.id)


class TestEditLocks:
    """Paid and void bills refuse edits to their inputs."""

    def test_paid_bill_refuses_new_item(self, db):
        bill = _make_bill(db)
        apply_payment(db, bill.id, {"method": "cash", "amount": Decimal("100")})
        assert bill.status == "paid"
        db.flush()
        before = len(_history(db, bill))

        with pytest.raises(BillLockedError):
            add_item(db, bill.id, {"description": "X-Ray",
                                   "unit_price": Decimal("40")})
        assert len(_history(db, bill)) == before
        assert bill.total_amount == Decimal("100.00")

    def test_paid_bill_refuses_discount_and_tax(self, db):
        bill = _make_bill(db)
        apply_payment(db, bill.id, {"method": "cash", "amount": Decimal("100")})
        with pytest.raises(BillLockedError):
            apply_discount(db, bill.id, Decimal("10"))
        with pytest.raises(BillLockedError):
            set_tax_rate(db, bill.id, Decimal("5"))

    def test_partial_bill_still_editable(self, db):
        bill = _make_bill(db)
        apply_payment(db, bill.id, {"method": "cash", "amount": Decimal("40")})
        add_item(db, bill.id, {"description": "X-Ray",
                               "unit_price": Decimal("40")})
        assert bill.total_amount == Decimal("140.00")
        assert bill.balance_due == Decimal("100.00")
        assert bill.status == "partial"


class TestHistory:
    """One history row per changed field."""

    def test_discount_change(self, db):
        bill = _make_bill(db)
        apply_discount(db, bill.id, Decimal("10"), "percentage",
                       reason="Staff discount", user_id=5)
        disc = _history(db, bill, "discount")
        kind = _history(db, bill, "discount_type")
        total = _history(db, bill, "total_amount")
        assert (disc[-1].status_from, disc[-1].status_to) == ("0.00", "10.00")
        assert kind[-1].status_to == "percentage"
        assert (total[-1].status_from, total[-1].status_to) == ("100.00", "90.00")
        assert disc[-1].reason == "Staff discount"

    def test_unchanged_value_writes_nothing(self, db):
        bill = _make_bill(db)
        set_tax_rate(db, bill.id, Decimal("0"))
        assert _history(db, bill, "tax_rate") == []

    def test_item_update_and_remove(self, db):
        bill = _make_bill(db)
        item = add_item(db, bill.id, {"description": "X-Ray",
                                      "unit_price": Decimal("40")})
        update_item(db, bill.id, item.id, {"quantity": 2})
        assert bill.total_amount == Decimal("180.00")
        assert _history(db, bill, f"items.{item.id}.quantity")[-1].status_to == "2"

        remove_item(db, bill.id, item.id)
        assert bill.total_amount == Decimal("100.00")
        removed = _history(db, bill, "items")[-1]
        assert removed.status_to is None
        assert removed.status_from.startswith("X-Ray")

    def test_history_rows_are_immutable(self, db):
        bill = _make_bill(db)
        row = _history(db, bill)[0]
        row.reason = "rewritten"
        with pytest.raises(RuntimeError):
            db.flush()

    def test_history_rows_cannot_be_deleted(self, db):
        bill = _make_bill(db)
        db.delete(_history(db, bill)[0])
        with pytest.raises(RuntimeError):
            db.flush()

    def test_reassign_patient(self, db):
        bill = _make_bill(db)
        reassign(db, bill.id, patient_id=2, doctor_id=8, user_id=1,
                 reason="Registered under the wrong patient")
        assert bill.patient_id == 2
        assert _history(db, bill, "patient_id")[-1].status_to == "2"
        assert _history(db, bill, "doctor_id")[-1].status_to == "8"


class TestVoid:
    """Void is terminal and freezes the numbers."""

    def test_void_requires_reason(self, db):
        bill = _make_bill(db)
        with pytest.raises(ValidationError):
            void_bill(db, bill.id, "   ")

    def test_void_is_terminal(self, db):
        bill = _make_bill(db)
        apply_payment(db, bill.id, {"method": "cash", "amount": Decimal("30")})
        void_bill(db, bill.id, "Duplicate of an earlier bill", user_id=6)
        assert bill.status == "void"
        assert bill.voided_by == 6
        assert bill.void_reason == "Duplicate of an earlier bill"
        assert bill.amount_paid == Decimal("30.00")
        assert bill.is_voided

        with pytest.raises(BillStateError):
            void_bill(db, bill.id, "Second attempt at voiding")
        with pytest.raises(BillLockedError):
            add_item(db, bill.id, {"description": "X", "unit_price": 1})
        with pytest.raises(BillLockedError):
            recalculate(db, bill.id)


class TestOverdue:
    """Overdue is derived at read time, never stored."""

    def test_past_due_with_balance(self, db):
        bill = _make_bill(db, due_date=date.today() - timedelta(days=3))
        assert bill.status == "pending"
        assert is_overdue(bill)
        assert effective_status(bill) == "overdue"
        assert [b.id for b in list_bills(db, status="overdue")] == [bill.id]

    def test_settled_or_draft_not_overdue(self, db):
        past = date.today() - timedelta(days=3)
        draft = _make_bill(db, issue=False, due_date=past)
        paid = _make_bill(db, due_date=past)
        apply_payment(db, paid.id, {"method": "cash", "amount": Decimal("100")})
        assert not is_overdue(draft)
        assert not is_overdue(paid)
        assert list_bills(db, overdue=True) == []

    def test_future_due_date(self, db):
        bill = _make_bill(db)
        assert effective_status(bill) == "pending"
        assert effective_status(bill, today=bill.due_date + timedelta(days=1)) == "overdue"


class TestVersioning:
    """Optimistic concurrency on the bill row."""

    def test_version_moves_on_every_write(self, db):
        bill = _make_bill(db)
        v = bill.version
        set_tax_rate(db, bill.id, Decimal("5"))
        assert bill.version > v

    def test_expected_version_mismatch(self, db):
        bill = _make_bill(db)
        with pytest.raises(ConcurrencyConflictError):
            apply_discount(db, bill.id, Decimal("5"),
                           expected_version=bill.version - 1)

    def test_concurrent_writer_detected(self, db):
        bill = _make_bill(db)
        bill = load_bill(db, bill.id)
        # another writer commits between our read and our write
        db.execute(text("UPDATE bills SET version = version + 1 WHERE id = :id"),
                   {"id": bill.id})
        bill.notes = "late edit"
        with pytest.raises(ConcurrencyConflictError):
            save_bill(db, bill)

    def test_recalculate_restores_totals(self, db):
        bill = _make_bill(db)
        bill.total_amount = Decimal("1")
        bill.balance_due = Decimal("1")
        db.flush()
        recalculate(db, bill.id)
        assert bill.total_amount == Decimal("100.00")
        assert bill.balance_due == Decimal("100.00")
        assert db.query(BillStatusHistory).filter(
            BillStatusHistory.bill_id == bill.id,
            BillStatusHistory.field_name == "total_amount").count() == 1
