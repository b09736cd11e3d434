# File: hospital_billing/services/billing_service.py
from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from hospital_billing.core.config import settings
from hospital_billing.models.billing import (
    OVERDUE,
    Bill,
    BillItem,
    BillStatus,
    BillStatusHistory,
    DiscountType,
    ItemType,
    RefundStatus,
)
from hospital_billing.services.audit import log_activity
from hospital_billing.services.billing_calc import (
    aggregate,
    compute_line,
    recompute_bill,
    validate_bill_discount,
)
from hospital_billing.services.billing_errors import (
    BillLockedError,
    BillStateError,
    DuplicateBillingError,
    NotFoundError,
    ValidationError,
)
from hospital_billing.services.billing_insurance import (
    get_policy,
    refresh_coverage_estimate,
    usable_policy,
)
from hospital_billing.services.billing_lifecycle import (
    guard_editable,
    record_field_change,
    transition,
    void,
)
from hospital_billing.services.billing_math import D, money2
from hospital_billing.services.billing_payments import refresh_ledger
from hospital_billing.services.billing_store import load_bill, save_bill
from hospital_billing.services.id_gen import next_bill_number, today_local

logger = logging.getLogger(__name__)

ITEM_FIELDS = (
    "description",
    "category",
    "quantity",
    "unit_price",
    "discount_amount",
    "discount_percentage",
)

# bills a completion hook may append to; drafts are left to the desk
OPEN_STATUSES = (
    BillStatus.PENDING.value,
    BillStatus.PARTIAL.value,
)


# ============================================================
# Small helpers
# ============================================================
def _get(data: Any, name: str, default=None):
    if isinstance(data, dict):
        return data.get(name, default)
    return getattr(data, name, default)


def _item_label(it: BillItem) -> str:
    return f"{it.description} x{it.quantity} @ {money2(it.unit_price)}"


def find_source_item(db: Session, source_type: Optional[str],
                     source_id: Optional[int]) -> Optional[BillItem]:
    if not source_type or source_id is None:
        return None
    return (db.query(BillItem).filter(
        BillItem.source_type == source_type,
        BillItem.source_id == int(source_id),
    ).first())


def _build_item(data: Any, seq: int, user_id: Optional[int]) -> BillItem:
    description = (_get(data, "description") or "").strip()
    if not description:
        raise ValidationError("Line item description is required")

    raw = {
        "quantity": _get(data, "quantity", 1),
        "unit_price": _get(data, "unit_price", 0),
        "discount_amount": _get(data, "discount_amount", 0) or 0,
        "discount_percentage": _get(data, "discount_percentage", 0) or 0,
    }
    amounts = compute_line(raw)

    item_type = str(_get(data, "item_type") or ItemType.MANUAL.value)
    if item_type not in {t.value for t in ItemType}:
        raise ValidationError(f"Unknown item type: {item_type!r}")

    return BillItem(
        seq=seq,
        item_type=item_type,
        source_type=_get(data, "source_type"),
        source_id=_get(data, "source_id"),
        category=_get(data, "category"),
        description=description,
        quantity=int(D(raw["quantity"])),
        unit_price=money2(raw["unit_price"]),
        discount_amount=money2(raw["discount_amount"]),
        discount_percentage=money2(raw["discount_percentage"]),
        gross_amount=amounts.gross,
        line_discount=amounts.discount,
        net_amount=amounts.net,
        created_by=user_id,
    )


def _next_seq(bill: Bill) -> int:
    return max((int(i.seq or 0) for i in bill.items), default=0) + 1


def _reprice(db: Session, bill: Bill, user_id: Optional[int],
             reason: str) -> None:
    """Totals -> coverage estimate -> ledger status, in that order."""
    old_total = money2(bill.total_amount)
    recompute_bill(bill)
    refresh_coverage_estimate(bill)
    record_field_change(db,
                        bill,
                        "total_amount",
                        old_total,
                        bill.total_amount,
                        changed_by=user_id,
                        reason=reason)
    refresh_ledger(db, bill, user_id=user_id, reason=reason)


# ============================================================
# Create / issue
# ============================================================
def create_bill(
    db: Session,
    patient_id: int,
    doctor_id: Optional[int] = None,
    items: Optional[Iterable[Any]] = None,
    discount=0,
    discount_type: str = DiscountType.FIXED.value,
    tax_rate=None,
    due_date: Optional[date] = None,
    notes: Optional[str] = None,
    primary_insurance_id: Optional[int] = None,
    issue: bool = False,
    user_id: Optional[int] = None,
) -> Bill:
    if tax_rate is None:
        tax_rate = settings.BILLING_DEFAULT_TAX
    discount = discount or 0
    validate_bill_discount(discount, discount_type, tax_rate)

    bill_date = today_local()
    bill = Bill(
        bill_number=next_bill_number(db),
        patient_id=int(patient_id),
        doctor_id=doctor_id,
        bill_date=bill_date,
        due_date=due_date
        or bill_date + timedelta(days=int(settings.BILLING_DUE_DAYS)),
        status=BillStatus.DRAFT.value,
        discount_value=money2(discount),
        discount_type=str(discount_type),
        tax_rate=money2(tax_rate),
        notes=notes,
        created_by=user_id,
    )

    if primary_insurance_id:
        policy = usable_policy(bill, get_policy(db, primary_insurance_id))
        bill.primary_insurance = policy

    seen = set()
    for n, data in enumerate(items or [], start=1):
        it = _build_item(data, n, user_id)
        key = (it.source_type, it.source_id)
        if it.source_type and it.source_id is not None:
            existing = find_source_item(db, *key)
            if existing or key in seen:
                raise DuplicateBillingError(
                    f"{it.source_type} {it.source_id} is already billed",
                    existing=existing)
            seen.add(key)
        bill.items.append(it)

    totals = aggregate(bill.items, bill.discount_value, bill.discount_type,
                       bill.tax_rate)
    if (bill.discount_type == DiscountType.FIXED.value
            and D(bill.discount_value) > totals.sub_total):
        raise ValidationError("Discount cannot exceed the bill subtotal")

    recompute_bill(bill)
    refresh_coverage_estimate(bill)
    db.add(bill)
    db.flush()

    record_field_change(db,
                        bill,
                        "status",
                        None,
                        bill.status,
                        changed_by=user_id,
                        reason="Bill created")
    if issue:
        transition(db,
                   bill,
                   BillStatus.PENDING.value,
                   changed_by=user_id,
                   reason="Bill issued")
    db.flush()

    log_activity(db,
                 "Bill Created",
                 "Billing",
                 f"Bill {bill.bill_number} for patient {bill.patient_id}: "
                 f"{len(bill.items)} item(s), total {bill.total_amount}",
                 user_id=user_id,
                 meta={"bill_id": bill.id})
    return bill


def issue_bill(db: Session,
               bill_id: int,
               user_id: Optional[int] = None,
               expected_version: Optional[int] = None) -> Bill:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    if bill.status != BillStatus.DRAFT.value:
        raise BillStateError(
            f"Bill {bill.bill_number} is {bill.status}; only drafts can be issued")
    transition(db,
               bill,
               BillStatus.PENDING.value,
               changed_by=user_id,
               reason="Bill issued")
    save_bill(db, bill)
    return bill


# ============================================================
# Items
# ============================================================
def add_item(db: Session,
             bill_id: int,
             data: Any,
             user_id: Optional[int] = None,
             expected_version: Optional[int] = None) -> BillItem:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    guard_editable(bill, "items")

    it = _build_item(data, _next_seq(bill), user_id)
    existing = find_source_item(db, it.source_type, it.source_id)
    if existing:
        raise DuplicateBillingError(
            f"{it.source_type} {it.source_id} is already billed",
            existing=existing)

    bill.items.append(it)
    db.flush()
    record_field_change(db,
                        bill,
                        "items",
                        None,
                        _item_label(it),
                        changed_by=user_id,
                        reason="Item added",
                        metadata={"bill_item_id": it.id})
    _reprice(db, bill, user_id, "Item added")
    save_bill(db, bill)

    log_activity(db,
                 "Bill Item Added",
                 "Billing",
                 f"{it.description} ({it.net_amount}) added to bill "
                 f"{bill.bill_number}",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "bill_item_id": it.id})
    return it


def _bill_item(bill: Bill, item_id: int) -> BillItem:
    it = next((i for i in bill.items if i.id == int(item_id)), None)
    if not it:
        raise NotFoundError(
            f"Item {item_id} not found on bill {bill.bill_number}")
    return it


def update_item(db: Session,
                bill_id: int,
                item_id: int,
                changes: Dict[str, Any],
                user_id: Optional[int] = None,
                expected_version: Optional[int] = None) -> BillItem:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    guard_editable(bill, "items")
    it = _bill_item(bill, item_id)

    unknown = set(changes) - set(ITEM_FIELDS)
    if unknown:
        raise ValidationError(
            f"Cannot change item field(s): {', '.join(sorted(unknown))}")

    merged = {k: getattr(it, k) for k in ITEM_FIELDS}
    merged.update({k: v for k, v in changes.items() if v is not None})
    if not (merged.get("description") or "").strip():
        raise ValidationError("Line item description is required")
    # validate before touching anything
    compute_line(merged)

    for field in ITEM_FIELDS:
        if field not in changes or changes[field] is None:
            continue
        old = getattr(it, field)
        new = changes[field]
        if field in ("unit_price", "discount_amount", "discount_percentage"):
            new = money2(new)
        elif field == "quantity":
            new = int(D(new))
        record_field_change(db,
                            bill,
                            f"items.{it.id}.{field}",
                            old,
                            new,
                            changed_by=user_id,
                            reason="Item updated")
        setattr(it, field, new)

    _reprice(db, bill, user_id, "Item updated")
    save_bill(db, bill)
    return it


def remove_item(db: Session,
                bill_id: int,
                item_id: int,
                user_id: Optional[int] = None,
                expected_version: Optional[int] = None) -> Bill:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    guard_editable(bill, "items")
    it = _bill_item(bill, item_id)
    if any(r.bill_item_id == it.id
           and r.status != RefundStatus.REJECTED.value
           for r in (bill.refunds or [])):
        raise ValidationError(
            f"Line item {it.id} has refunds against it and cannot be removed")

    record_field_change(db,
                        bill,
                        "items",
                        _item_label(it),
                        None,
                        changed_by=user_id,
                        reason="Item removed",
                        metadata={"bill_item_id": it.id})
    bill.items.remove(it)
    _reprice(db, bill, user_id, "Item removed")
    save_bill(db, bill)
    return bill


# ============================================================
# Bill-level inputs
# ============================================================
def apply_discount(db: Session,
                   bill_id: int,
                   value,
                   discount_type: str = DiscountType.FIXED.value,
                   reason: Optional[str] = None,
                   user_id: Optional[int] = None,
                   expected_version: Optional[int] = None) -> Bill:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    guard_editable(bill, "discount")
    guard_editable(bill, "discount_type")
    validate_bill_discount(value, discount_type, bill.tax_rate)

    value = money2(value)
    discount_type = str(discount_type)
    if (discount_type == DiscountType.FIXED.value
            and value > money2(bill.sub_total)):
        raise ValidationError(
            f"Discount {value} cannot exceed the bill subtotal {money2(bill.sub_total)}")

    record_field_change(db,
                        bill,
                        "discount",
                        bill.discount_value,
                        value,
                        changed_by=user_id,
                        reason=reason)
    record_field_change(db,
                        bill,
                        "discount_type",
                        bill.discount_type,
                        discount_type,
                        changed_by=user_id,
                        reason=reason)
    bill.discount_value = value
    bill.discount_type = discount_type
    _reprice(db, bill, user_id, reason or "Discount applied")
    save_bill(db, bill)

    log_activity(db,
                 "Discount Applied",
                 "Billing",
                 f"Bill {bill.bill_number}: discount {value} ({discount_type}),"
                 f" total {bill.total_amount}",
                 user_id=user_id,
                 meta={"bill_id": bill.id})
    return bill


def set_tax_rate(db: Session,
                 bill_id: int,
                 tax_rate,
                 user_id: Optional[int] = None,
                 expected_version: Optional[int] = None) -> Bill:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    guard_editable(bill, "tax_rate")
    validate_bill_discount(bill.discount_value, bill.discount_type, tax_rate)

    rate = money2(tax_rate)
    record_field_change(db,
                        bill,
                        "tax_rate",
                        bill.tax_rate,
                        rate,
                        changed_by=user_id)
    bill.tax_rate = rate
    _reprice(db, bill, user_id, "Tax rate changed")
    save_bill(db, bill)
    return bill


def reassign(db: Session,
             bill_id: int,
             patient_id: Optional[int] = None,
             doctor_id: Optional[int] = None,
             user_id: Optional[int] = None,
             reason: Optional[str] = None,
             expected_version: Optional[int] = None) -> Bill:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    if patient_id is not None:
        guard_editable(bill, "patient_id")
    if doctor_id is not None:
        guard_editable(bill, "doctor_id")

    if patient_id is not None and int(patient_id) != int(bill.patient_id):
        if bill.claims:
            raise ValidationError(
                "Bill has insurance claims; the patient cannot be changed")
        record_field_change(db,
                            bill,
                            "patient_id",
                            bill.patient_id,
                            int(patient_id),
                            changed_by=user_id,
                            reason=reason)
        bill.patient_id = int(patient_id)
        # the old patient's policy no longer applies
        if bill.primary_insurance_id:
            record_field_change(db,
                                bill,
                                "primary_insurance_id",
                                bill.primary_insurance_id,
                                None,
                                changed_by=user_id,
                                reason=reason)
            bill.primary_insurance = None
            bill.primary_insurance_id = None
            refresh_coverage_estimate(bill)

    if doctor_id is not None and doctor_id != bill.doctor_id:
        record_field_change(db,
                            bill,
                            "doctor_id",
                            bill.doctor_id,
                            doctor_id,
                            changed_by=user_id,
                            reason=reason)
        bill.doctor_id = doctor_id

    save_bill(db, bill)
    return bill


def recalculate(db: Session,
                bill_id: int,
                user_id: Optional[int] = None,
                expected_version: Optional[int] = None) -> Bill:
    """
    Rebuild every stored aggregate from raw items plus the ledger.
    Void bills keep their frozen numbers.
    """
    bill = load_bill(db, bill_id, expected_version=expected_version)
    if bill.status == BillStatus.VOID.value:
        raise BillLockedError(f"Bill {bill.bill_number} is void")
    _reprice(db, bill, user_id, "Recalculated")
    save_bill(db, bill)
    return bill


# ============================================================
# Void
# ============================================================
def void_bill(db: Session,
              bill_id: int,
              reason: str,
              user_id: Optional[int] = None,
              expected_version: Optional[int] = None) -> Bill:
    bill = load_bill(db, bill_id, expected_version=expected_version)
    void(db, bill, reason, user_id=user_id)
    save_bill(db, bill)

    log_activity(db,
                 "Bill Voided",
                 "Billing",
                 f"Bill {bill.bill_number} voided: {bill.void_reason}",
                 severity="warning",
                 user_id=user_id,
                 meta={"bill_id": bill.id})
    return bill


# ============================================================
# Reads
# ============================================================
def get_bill(db: Session, bill_id: int) -> Bill:
    return load_bill(db, bill_id, for_update=False)


def bill_history(db: Session, bill_id: int) -> List[BillStatusHistory]:
    bill = get_bill(db, bill_id)
    return (db.query(BillStatusHistory).filter(
        BillStatusHistory.bill_id == bill.id).order_by(
            BillStatusHistory.id.asc()).all())


def list_bills(
    db: Session,
    patient_id: Optional[int] = None,
    status: Optional[str] = None,
    overdue: Optional[bool] = None,
    today: Optional[date] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Bill]:
    today = today or today_local()
    q = db.query(Bill)
    if patient_id is not None:
        q = q.filter(Bill.patient_id == int(patient_id))

    overdue_cond = and_(
        Bill.status.in_([
            BillStatus.PENDING.value,
            BillStatus.PARTIAL.value,
            BillStatus.PAID.value,
        ]),
        Bill.due_date.isnot(None),
        Bill.due_date < today,
        Bill.balance_due > 0,
    )

    if status == OVERDUE:
        overdue = True
    elif status:
        q = q.filter(Bill.status == status)

    if overdue is True:
        q = q.filter(overdue_cond)
    elif overdue is False:
        q = q.filter(
            or_(
                Bill.status.notin_([
                    BillStatus.PENDING.value,
                    BillStatus.PARTIAL.value,
                    BillStatus.PAID.value,
                ]),
                Bill.due_date.is_(None),
                Bill.due_date >= today,
                Bill.balance_due <= 0,
            ))

    return (q.order_by(Bill.created_at.desc(),
                       Bill.id.desc()).offset(int(offset)).limit(
                           int(limit)).all())


def find_open_bill(db: Session, patient_id: int) -> Optional[Bill]:
    """Latest pending or partial bill for the patient."""
    return (db.query(Bill).filter(
        Bill.patient_id == int(patient_id),
        Bill.status.in_(OPEN_STATUSES),
    ).order_by(Bill.created_at.desc(), Bill.id.desc()).first())
