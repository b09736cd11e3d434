"""Tests for merging stored and derived alerts."""

from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

from hospital_billing.services.alerts import (
    BILL_OVERDUE,
    DerivedAlert,
    StoredAlert,
    merge_alerts,
    normalize_alert,
    overdue_bill_alerts,
)

TODAY = date(2026, 3, 1)


def _stored(id, severity="info", kind="NOTE", minutes=0):
    return SimpleNamespace(id=id,
                           kind=kind,
                           subject_id=None,
                           message=f"stored {id}",
                           severity=severity,
                           created_at=datetime(2026, 3, 1, 9, minutes),
                           is_resolved=False)


def _bill(id, days_late, status="pending", balance="10"):
    return SimpleNamespace(id=id,
                           bill_number=f"BL-{id}",
                           status=status,
                           due_date=TODAY - timedelta(days=days_late),
                           balance_due=Decimal(balance))


class TestNormalize:
    """Both alert sources share one shape."""

    def test_stored_is_resolvable(self):
        view = normalize_alert(StoredAlert(_stored(4, severity="warning")))
        assert view.id == "stored:4"
        assert view.severity == "WARN"
        assert view.resolvable

    def test_derived_is_not_resolvable(self):
        view = normalize_alert(DerivedAlert(BILL_OVERDUE, 9, "late", "CRIT"))
        assert view.id == "derived:BILL_OVERDUE:9"
        assert not view.resolvable


class TestMerge:
    """Filter, severity-first ordering, pagination."""

    def test_severity_then_newest(self):
        stored = [_stored(1, minutes=1), _stored(2, "error", minutes=2),
                  _stored(3, minutes=3)]
        derived = [DerivedAlert(BILL_OVERDUE, 7, "late", "WARN")]
        ids = [v.id for v in merge_alerts(stored, derived)]
        assert ids == ["stored:2", "derived:BILL_OVERDUE:7", "stored:3",
                       "stored:1"]

    def test_kind_filter_and_pages(self):
        stored = [_stored(i, minutes=i) for i in range(1, 6)]
        derived = [DerivedAlert(BILL_OVERDUE, 7, "late")]
        assert [v.kind for v in merge_alerts(stored, derived,
                                             kind=BILL_OVERDUE)] == [BILL_OVERDUE]
        page2 = merge_alerts(stored, kind="NOTE", page=2, per_page=2)
        assert [v.id for v in page2] == ["stored:3", "stored:2"]


class TestOverdueAlerts:
    """Derived from bills at read time."""

    def test_only_overdue_bills(self):
        bills = [
            _bill(1, 5),
            _bill(2, 45),
            _bill(3, 5, balance="0"),
            _bill(4, 5, status="draft"),
            _bill(5, -2),
        ]
        alerts = overdue_bill_alerts(bills, today=TODAY)
        assert [(a.subject_id, a.severity) for a in alerts] == [(1, "WARN"),
                                                               (2, "CRIT")]
        assert "45 day(s) overdue" in alerts[1].message
