"""Tests for the completion hooks that bill appointments and lab results."""

from contextlib import contextmanager
from decimal import Decimal

import pytest

from hospital_billing.core.config import settings
from hospital_billing.models.audit import ActivityLog
from hospital_billing.models.billing import Bill, BillItem
from hospital_billing.services.billing_events import (
    AppointmentCompleted,
    BillingEventBus,
    LabResultCompleted,
)
from hospital_billing.services.billing_service import create_bill


@contextmanager
def _session(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


def _appointment(appointment_id=11, patient_id=1, fee="50", **kw):
    return AppointmentCompleted(appointment_id=appointment_id,
                                patient_id=patient_id,
                                doctor_id=3,
                                doctor_name="Rao",
                                fee=Decimal(fee),
                                **kw)


class TestAppointmentHook:
    """Completed appointments become consultation lines."""

    def test_creates_bill_and_item(self, bus, session_factory):
        [res] = bus.publish(_appointment())
        assert res.outcome == "billed"

        with _session(session_factory) as s:
            bill = s.get(Bill, res.bill_id)
            assert bill.status == "pending"
            assert bill.doctor_id == 3
            assert bill.total_amount == Decimal("50.00")
            [item] = bill.items
            assert item.id == res.bill_item_id
            assert item.item_type == "appointment"
            assert (item.source_type, item.source_id) == ("appointment", 11)
            assert item.description == "Consultation - Dr. Rao"
            assert s.query(ActivityLog).filter(
                ActivityLog.action == "Bill Item Created").count() == 1

    def test_second_publish_is_duplicate(self, bus, session_factory):
        [first] = bus.publish(_appointment())
        [again] = bus.publish(_appointment())
        assert again.outcome == "duplicate"
        assert again.bill_item_id == first.bill_item_id

        with _session(session_factory) as s:
            assert s.query(BillItem).count() == 1

    def test_appends_to_open_bill(self, bus, session_factory):
        with _session(session_factory) as s:
            bill = create_bill(s, patient_id=1, items=[{
                "description": "Registration",
                "unit_price": Decimal("10"),
            }], issue=True)
            s.commit()
            bill_id = bill.id

        [res] = bus.publish(_appointment(discount_percentage=Decimal("10")))
        assert res.bill_id == bill_id

        with _session(session_factory) as s:
            bill = s.get(Bill, bill_id)
            assert len(bill.items) == 2
            assert bill.total_amount == Decimal("55.00")

    def test_draft_bill_left_alone(self, bus, session_factory):
        with _session(session_factory) as s:
            draft = create_bill(s, patient_id=7, items=[{
                "description": "Registration",
                "unit_price": Decimal("10"),
            }])
            s.commit()
            draft_id = draft.id

        [res] = bus.publish(_appointment(patient_id=7))
        assert res.outcome == "billed"
        assert res.bill_id != draft_id

        with _session(session_factory) as s:
            draft = s.get(Bill, draft_id)
            assert draft.status == "draft"
            assert len(draft.items) == 1
            assert draft.total_amount == Decimal("10.00")
            assert s.get(Bill, res.bill_id).status == "pending"

    def test_zero_fee_skipped(self, bus, session_factory):
        [res] = bus.publish(_appointment(fee="0"))
        assert res.outcome == "skipped"
        with _session(session_factory) as s:
            assert s.query(Bill).count() == 0

    def test_disabled_autocreate(self, bus, session_factory, monkeypatch):
        monkeypatch.setattr(settings, "BILLING_AUTOCREATE", False)
        [res] = bus.publish(_appointment())
        assert res.outcome == "skipped"
        with _session(session_factory) as s:
            assert s.query(Bill).count() == 0


class TestLabResultHook:
    """Completed lab results become laboratory lines."""

    def test_creates_lab_line(self, bus, session_factory):
        [res] = bus.publish(LabResultCompleted(result_id=7,
                                               patient_id=2,
                                               test_name="Complete Blood Count",
                                               test_code="CBC",
                                               cost=Decimal("25.5")))
        assert res.outcome == "billed"
        with _session(session_factory) as s:
            item = s.get(BillItem, res.bill_item_id)
            assert item.item_type == "lab_test"
            assert item.description == "Lab Test - Complete Blood Count (CBC)"
            assert item.net_amount == Decimal("25.50")
            assert item.bill.patient_id == 2

    def test_same_id_different_source_both_billed(self, bus, session_factory):
        bus.publish(_appointment(appointment_id=5))
        [res] = bus.publish(LabResultCompleted(result_id=5,
                                               patient_id=1,
                                               test_name="Lipid Panel",
                                               cost=Decimal("40")))
        assert res.outcome == "billed"
        with _session(session_factory) as s:
            assert s.query(BillItem).count() == 2


class TestFailureIsolation:
    """A failing handler is audited and never reaches the publisher."""

    def test_failure_audited_others_still_run(self, bus, session_factory):
        def boom(db, event):
            raise RuntimeError("pricing service unavailable")

        bus.subscribe(AppointmentCompleted, boom)
        results = bus.publish(_appointment())
        assert [r.outcome for r in results] == ["billed", "failed"]
        assert "pricing service unavailable" in results[1].message

        with _session(session_factory) as s:
            row = s.query(ActivityLog).filter(
                ActivityLog.action == "Bill Item Creation Failed").one()
            assert row.severity == "error"
            assert row.meta["event"] == "AppointmentCompleted"
            assert row.meta["appointment_id"] == 11
            assert s.query(BillItem).count() == 1

    def test_failed_handler_rolls_back_its_writes(self, session_factory):
        def half_done(db, event):
            create_bill(db, patient_id=event.patient_id)
            db.flush()
            raise ValueError("crashed after writing")

        bus = BillingEventBus(session_factory)
        bus.subscribe(AppointmentCompleted, half_done)
        [res] = bus.publish(_appointment())
        assert res.outcome == "failed"
        with _session(session_factory) as s:
            assert s.query(Bill).count() == 0

    @pytest.mark.parametrize("fee", ["-5", "0.00"])
    def test_non_positive_fee_never_fails(self, bus, fee):
        [res] = bus.publish(_appointment(fee=fee))
        assert res.outcome == "skipped"
