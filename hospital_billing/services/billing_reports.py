# FILE: hospital_billing/services/billing_reports.py
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from hospital_billing.models.billing import (
    Bill,
    BillStatus,
    ClaimStatus,
    InsuranceClaim,
    Payment,
    PaymentStatus,
)
from hospital_billing.services.billing_errors import ValidationError
from hospital_billing.services.billing_math import D, ZERO, money2
from hospital_billing.services.id_gen import today_local

# (label, last day overdue); None = open ended. Not yet due is "current".
AGING_BUCKETS: Tuple[Tuple[str, Optional[int]], ...] = (
    ("current", 0),
    ("1-30_days", 30),
    ("31-60_days", 60),
    ("61-90_days", 90),
    ("90+_days", None),
)


# ---------- helpers ----------


def _date_range(date_from: Optional[date],
                date_to: Optional[date]) -> Tuple[date, date]:
    """
    Inclusive date range. If missing, default to the current month so far.
    """
    today = today_local()
    d_to = date_to or today
    d_from = date_from or d_to.replace(day=1)
    if d_to < d_from:
        raise ValidationError("date_to must be on or after date_from")
    return d_from, d_to


def _dt_bounds(d_from: date, d_to: date) -> Tuple[datetime, datetime]:
    """[start, end) datetimes covering both days."""
    return (datetime.combine(d_from, time.min),
            datetime.combine(d_to + timedelta(days=1), time.min))


def _share(part: Decimal, whole: Decimal) -> Decimal:
    return money2(part * 100 / whole) if whole > 0 else ZERO


def _sum(values: Iterable[Any]) -> Decimal:
    return money2(sum((D(v) for v in values), ZERO))


def _completed_payments(db: Session, d_from: date, d_to: date) -> List[Payment]:
    start, end = _dt_bounds(d_from, d_to)
    return (db.query(Payment).filter(
        Payment.status == PaymentStatus.COMPLETED.value,
        Payment.payment_date >= start,
        Payment.payment_date < end,
    ).order_by(Payment.payment_date.asc(), Payment.id.asc()).all())


def _method_breakdown(payments: List[Payment],
                      total: Decimal) -> List[Dict[str, Any]]:
    groups: Dict[str, List[Payment]] = defaultdict(list)
    for p in payments:
        groups[p.method].append(p)

    rows = []
    for method, group in groups.items():
        amount = _sum(p.amount for p in group)
        rows.append({
            "method": method,
            "amount": amount,
            "count": len(group),
            "percentage": _share(amount, total),
            "average_amount": money2(amount / len(group)),
        })
    rows.sort(key=lambda r: (-r["amount"], r["method"]))
    return rows


def _daily_breakdown(payments: List[Payment]) -> List[Dict[str, Any]]:
    groups: Dict[date, List[Payment]] = defaultdict(list)
    for p in payments:
        groups[p.payment_date.date()].append(p)
    return [{
        "date": day,
        "total": _sum(p.amount for p in groups[day]),
        "count": len(groups[day]),
    } for day in sorted(groups)]


# ---------- reports ----------


def revenue_report(db: Session,
                   date_from: Optional[date] = None,
                   date_to: Optional[date] = None) -> Dict[str, Any]:
    """
    Billed vs. collected for the range.
    Bills count by bill_date (void bills excluded), money by payment_date.
    """
    d_from, d_to = _date_range(date_from, date_to)

    bills = (db.query(Bill).filter(
        Bill.status != BillStatus.VOID.value,
        Bill.bill_date >= d_from,
        Bill.bill_date <= d_to,
    ).all())
    payments = _completed_payments(db, d_from, d_to)

    total_billed = _sum(b.total_amount for b in bills)
    total_paid = _sum(p.amount for p in payments)
    total_insurance = _sum(b.insurance_approved_amount for b in bills)

    return {
        "period": {"from": d_from, "to": d_to},
        "summary": {
            "bill_count": len(bills),
            "total_billed": total_billed,
            "total_paid": total_paid,
            "total_insurance_approved": total_insurance,
            "total_discount": _sum(b.total_discount for b in bills),
            "total_tax": _sum(b.total_tax for b in bills),
            "outstanding": _sum(b.balance_due for b in bills),
            "collection_rate": _share(total_paid, total_billed),
        },
        "daily_revenue": _daily_breakdown(payments),
        "payment_methods": _method_breakdown(payments, total_paid),
    }


def outstanding_report(db: Session,
                       days_overdue: Optional[int] = None,
                       min_amount=None,
                       max_amount=None,
                       today: Optional[date] = None) -> Dict[str, Any]:
    """
    Unpaid, non-void bills with money still due, grouped by how late they are.
    days_overdue=N keeps bills whose due date is more than N days past.
    """
    today = today or today_local()

    q = db.query(Bill).filter(
        Bill.status.notin_([BillStatus.VOID.value, BillStatus.PAID.value]),
        Bill.balance_due > 0,
    )
    if days_overdue is not None:
        if days_overdue < 0:
            raise ValidationError("days_overdue cannot be negative")
        q = q.filter(Bill.due_date < today - timedelta(days=days_overdue))
    if min_amount is not None:
        q = q.filter(Bill.balance_due >= money2(min_amount))
    if max_amount is not None:
        q = q.filter(Bill.balance_due <= money2(max_amount))
    bills = q.order_by(Bill.due_date.asc(), Bill.id.asc()).all()

    total = _sum(b.balance_due for b in bills)

    buckets = {
        label: {"total": ZERO, "count": 0}
        for label, _ in AGING_BUCKETS
    }
    rows = []
    for b in bills:
        late = (today - b.due_date).days if b.due_date else 0
        for label, hi in AGING_BUCKETS:
            if hi is None or late <= hi:
                buckets[label]["total"] = money2(buckets[label]["total"] +
                                                 D(b.balance_due))
                buckets[label]["count"] += 1
                break
        rows.append({
            "bill_id": b.id,
            "bill_number": b.bill_number,
            "patient_id": b.patient_id,
            "status": b.status,
            "due_date": b.due_date,
            "days_overdue": max(late, 0),
            "balance_due": money2(b.balance_due),
        })

    for label in buckets:
        buckets[label]["percentage"] = _share(buckets[label]["total"], total)

    return {
        "as_of": today,
        "summary": {
            "total_outstanding": total,
            "total_bills": len(bills),
            "average_outstanding": (money2(total / len(bills))
                                    if bills else ZERO),
        },
        "aging_buckets": buckets,
        "bills": rows,
    }


def payment_method_report(db: Session,
                          date_from: Optional[date] = None,
                          date_to: Optional[date] = None) -> Dict[str, Any]:
    d_from, d_to = _date_range(date_from, date_to)
    payments = _completed_payments(db, d_from, d_to)
    total = _sum(p.amount for p in payments)

    return {
        "period": {"from": d_from, "to": d_to},
        "summary": {
            "total_amount": total,
            "total_transactions": len(payments),
            "average_transaction": (money2(total / len(payments))
                                    if payments else ZERO),
        },
        "methods": _method_breakdown(payments, total),
        "daily": _daily_breakdown(payments),
    }


def insurance_claim_report(db: Session,
                           date_from: Optional[date] = None,
                           date_to: Optional[date] = None,
                           status: Optional[str] = None) -> Dict[str, Any]:
    """Claims submitted in the range, by status and by provider."""
    d_from, d_to = _date_range(date_from, date_to)
    start, end = _dt_bounds(d_from, d_to)

    q = db.query(InsuranceClaim).filter(
        InsuranceClaim.submission_date >= start,
        InsuranceClaim.submission_date < end,
    )
    if status:
        if status not in {s.value for s in ClaimStatus}:
            raise ValidationError(f"Unknown claim status: {status!r}")
        q = q.filter(InsuranceClaim.status == status)
    claims = q.all()

    total_claimed = _sum(c.claim_amount for c in claims)
    total_approved = _sum(c.approved_amount for c in claims)

    by_status: Dict[str, Dict[str, Any]] = {}
    for c in claims:
        row = by_status.setdefault(c.status, {
            "count": 0,
            "claimed_amount": ZERO,
            "approved_amount": ZERO,
        })
        row["count"] += 1
        row["claimed_amount"] = money2(row["claimed_amount"] + D(c.claim_amount))
        row["approved_amount"] = money2(row["approved_amount"] +
                                        D(c.approved_amount))
    for row in by_status.values():
        row["percentage"] = _share(row["claimed_amount"], total_claimed)

    approved_states = {
        ClaimStatus.APPROVED.value,
        ClaimStatus.PARTIAL_APPROVED.value,
    }
    by_provider: Dict[str, Dict[str, Any]] = {}
    for c in claims:
        name = c.patient_insurance.provider_name if c.patient_insurance else "-"
        row = by_provider.setdefault(name, {
            "provider_name": name,
            "count": 0,
            "approved_count": 0,
            "claimed_amount": ZERO,
            "approved_amount": ZERO,
        })
        row["count"] += 1
        row["approved_count"] += int(c.status in approved_states)
        row["claimed_amount"] = money2(row["claimed_amount"] + D(c.claim_amount))
        row["approved_amount"] = money2(row["approved_amount"] +
                                        D(c.approved_amount))
    for row in by_provider.values():
        row["approval_rate"] = money2(
            D(row.pop("approved_count")) * 100 / row["count"])

    return {
        "period": {"from": d_from, "to": d_to},
        "summary": {
            "total_claims": len(claims),
            "total_claimed": total_claimed,
            "total_approved": total_approved,
            "approval_rate": _share(total_approved, total_claimed),
            "average_claim_amount": (money2(total_claimed / len(claims))
                                     if claims else ZERO),
        },
        "by_status": by_status,
        "by_provider": sorted(by_provider.values(),
                              key=lambda r: r["provider_name"]),
    }
