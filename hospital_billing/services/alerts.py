# FILE: hospital_billing/services/alerts.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Union

from hospital_billing.services.billing_lifecycle import is_overdue
from hospital_billing.services.billing_math import D


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    CRIT = "CRIT"


SEVERITY_RANK = {
    AlertSeverity.INFO.value: 0,
    AlertSeverity.WARN.value: 1,
    AlertSeverity.CRIT.value: 2,
}

BILL_OVERDUE = "BILL_OVERDUE"


# -------------------------
# Alert sources
# -------------------------
@dataclass(frozen=True)
class StoredAlert:
    """A persisted alert row (anything with id/kind/message/severity...)."""
    record: Any


@dataclass(frozen=True)
class DerivedAlert:
    """Computed on the fly; has no row, so it cannot be resolved."""
    kind: str
    subject_id: int
    message: str
    severity: str = AlertSeverity.WARN.value
    computed_at: Optional[datetime] = None


Alert = Union[StoredAlert, DerivedAlert]


@dataclass(frozen=True)
class AlertView:
    id: str
    kind: str
    subject_id: Optional[int]
    message: str
    severity: str
    created_at: Optional[datetime]
    resolvable: bool
    resolved: bool = False


def _sev(x: Any) -> str:
    v = x.value if isinstance(x, Enum) else str(x or "")
    v = v.upper()
    if v in ("WARNING", "WARN"):
        return AlertSeverity.WARN.value
    if v in ("ERROR", "CRITICAL", "CRIT"):
        return AlertSeverity.CRIT.value
    return AlertSeverity.INFO.value


def normalize_alert(alert: Alert) -> AlertView:
    if isinstance(alert, StoredAlert):
        r = alert.record
        kind = getattr(r, "kind", None) or getattr(r, "alert_type", None)
        return AlertView(
            id=f"stored:{r.id}",
            kind=kind.value if isinstance(kind, Enum) else str(kind),
            subject_id=getattr(r, "subject_id", None),
            message=r.message,
            severity=_sev(getattr(r, "severity", None)),
            created_at=getattr(r, "created_at", None),
            resolvable=True,
            resolved=bool(getattr(r, "is_resolved", False)),
        )
    if isinstance(alert, DerivedAlert):
        return AlertView(
            id=f"derived:{alert.kind}:{alert.subject_id}",
            kind=alert.kind,
            subject_id=alert.subject_id,
            message=alert.message,
            severity=_sev(alert.severity),
            created_at=alert.computed_at,
            resolvable=False,
        )
    raise TypeError(f"Not an alert: {alert!r}")


def merge_alerts(
    stored: Iterable[Any] = (),
    derived: Iterable[DerivedAlert] = (),
    kind: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> List[AlertView]:
    """
    One list out of both sources: filter by kind, sort by severity (highest
    first) then newest first, then paginate (page is 1-based).
    """
    views = [
        normalize_alert(a if isinstance(a, StoredAlert) else StoredAlert(a))
        for a in stored
    ]
    views += [normalize_alert(a) for a in derived]

    if kind:
        views = [v for v in views if v.kind == kind]

    views.sort(key=lambda v: (v.created_at or datetime.min), reverse=True)
    views.sort(key=lambda v: SEVERITY_RANK.get(v.severity, 0), reverse=True)

    page = max(1, int(page))
    per_page = max(1, int(per_page))
    offset = (page - 1) * per_page
    return views[offset:offset + per_page]


def overdue_bill_alerts(bills: Iterable[Any],
                        today: Optional[date] = None) -> List[DerivedAlert]:
    today = today or date.today()
    now = datetime.utcnow()
    out: List[DerivedAlert] = []
    for b in bills:
        if not is_overdue(b, today):
            continue
        days = (today - b.due_date).days
        out.append(
            DerivedAlert(
                kind=BILL_OVERDUE,
                subject_id=b.id,
                message=(f"Bill {b.bill_number} is {days} day(s) overdue; "
                         f"balance {D(b.balance_due)}"),
                severity=(AlertSeverity.CRIT.value
                          if days > 30 else AlertSeverity.WARN.value),
                computed_at=now,
            ))
    return out
