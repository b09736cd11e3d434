# FILE: hospital_billing/services/billing_lifecycle.py
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from hospital_billing.models.billing import (
    OVERDUE,
    Bill,
    BillStatus,
    BillStatusHistory,
)
from hospital_billing.services.billing_errors import (
    BillLockedError,
    BillStateError,
    ValidationError,
)
from hospital_billing.services.billing_math import D, dec_s
from hospital_billing.services.billing_store import append_status_history

logger = logging.getLogger(__name__)

# from -> allowed targets. void is terminal.
TRANSITIONS: Dict[str, frozenset] = {
    BillStatus.DRAFT.value: frozenset({"pending", "partial", "paid", "void"}),
    BillStatus.PENDING.value: frozenset({"partial", "paid", "void"}),
    BillStatus.PARTIAL.value: frozenset({"pending", "paid", "void"}),
    BillStatus.PAID.value: frozenset({"partial", "pending", "void"}),
    BillStatus.VOID.value: frozenset(),
}

LOCKED_STATUSES = frozenset({BillStatus.PAID.value, BillStatus.VOID.value})

# fields whose edits are refused once a bill is paid or void
GUARDED_FIELDS = frozenset({
    "items",
    "discount",
    "discount_type",
    "tax_rate",
    "patient_id",
    "doctor_id",
})


def _s(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, Decimal):
        return dec_s(v)
    if hasattr(v, "value"):
        return str(v.value)
    return str(v)


def can_transition(current: str, to: str) -> bool:
    return to in TRANSITIONS.get(current, frozenset())


def transition(
    db: Session,
    bill: Bill,
    to: str,
    changed_by: Optional[int] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[BillStatusHistory]:
    """
    Move the bill to `to` and append one history row.
    Same-state moves are a no-op (no row). Illegal moves raise BillStateError.
    """
    to = _s(to)
    current = bill.status
    if to == current:
        return None
    if not can_transition(current, to):
        raise BillStateError(
            f"Bill {bill.bill_number}: cannot move from {current} to {to}")

    bill.status = to
    entry = BillStatusHistory(
        bill=bill,
        field_name="status",
        status_from=current,
        status_to=to,
        changed_by=changed_by,
        reason=reason,
        meta=metadata or None,
    )
    append_status_history(db, entry)
    logger.info("Bill %s status %s -> %s", bill.bill_number, current, to)
    return entry


def guard_editable(bill: Bill, field: str) -> None:
    if field in GUARDED_FIELDS and bill.status in LOCKED_STATUSES:
        raise BillLockedError(
            f"Bill {bill.bill_number} is {bill.status}; {field} cannot be changed")


def record_field_change(
    db: Session,
    bill: Bill,
    field: str,
    old: Any,
    new: Any,
    changed_by: Optional[int] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[BillStatusHistory]:
    old_s, new_s = _s(old), _s(new)
    if old_s == new_s:
        return None
    entry = BillStatusHistory(
        bill=bill,
        field_name=field,
        status_from=old_s,
        status_to=new_s,
        changed_by=changed_by,
        reason=reason,
        meta=metadata or None,
    )
    return append_status_history(db, entry)


def void(db: Session,
         bill: Bill,
         reason: str,
         user_id: Optional[int] = None) -> BillStatusHistory:
    """
    Terminal. Stamps voided_* and freezes every derived field as-is.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to void a bill")
    if bill.status == BillStatus.VOID.value:
        raise BillStateError(f"Bill {bill.bill_number} is already void")

    entry = transition(db,
                       bill,
                       BillStatus.VOID.value,
                       changed_by=user_id,
                       reason=reason)
    bill.voided_at = datetime.utcnow()
    bill.voided_by = user_id
    bill.void_reason = reason
    return entry


def is_overdue(bill: Bill, today: Optional[date] = None) -> bool:
    today = today or date.today()
    if bill.status not in (BillStatus.PENDING.value, BillStatus.PARTIAL.value,
                           BillStatus.PAID.value):
        return False
    if not bill.due_date or bill.due_date >= today:
        return False
    return D(bill.balance_due) > 0


def effective_status(bill: Bill, today: Optional[date] = None) -> str:
    return OVERDUE if is_overdue(bill, today) else bill.status
