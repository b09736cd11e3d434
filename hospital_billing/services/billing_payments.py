# FILE: hospital_billing/services/billing_payments.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from hospital_billing.models.billing import (
    Bill,
    BillRefund,
    BillStatus,
    CardType,
    Payment,
    PaymentStatus,
    PayMethod,
    RefundMethod,
    RefundStatus,
    RefundType,
)
from hospital_billing.services.audit import log_activity
from hospital_billing.services.billing_calc import compute_balance, field_of
from hospital_billing.services.billing_errors import (
    BillLockedError,
    InvalidPaymentError,
    NotFoundError,
    RefundStateError,
    ValidationError,
)
from hospital_billing.services.billing_lifecycle import (
    record_field_change,
    transition,
)
from hospital_billing.services.billing_math import D, ZERO, clamp0, money2
from hospital_billing.services.billing_store import load_bill, save_bill
from hospital_billing.services.id_gen import next_refund_number

logger = logging.getLogger(__name__)

# methods that always carry a gateway / bank reference
TXN_REQUIRED = {
    PayMethod.CARD.value,
    PayMethod.BANK_TRANSFER.value,
    PayMethod.MOBILE_MONEY.value,
}

MIN_REASON_LEN = 10


# ============================================================
# Ledger status
# ============================================================
def ledger_status(bill: Bill) -> Optional[str]:
    """
    Status implied by the ledger:
      paid    -> balance_due == 0 and total_amount > 0
      partial -> anything paid or approved by insurance
      pending -> otherwise (an untouched draft stays draft)
    Void bills are frozen: None.
    """
    if bill.status == BillStatus.VOID.value:
        return None

    total = D(bill.total_amount)
    paid = D(bill.amount_paid)
    ins = D(bill.insurance_approved_amount)
    balance = D(bill.balance_due)

    if total > 0 and balance == 0:
        return BillStatus.PAID.value
    if paid > 0 or ins > 0:
        return BillStatus.PARTIAL.value
    if bill.status == BillStatus.DRAFT.value:
        return BillStatus.DRAFT.value
    return BillStatus.PENDING.value


def refresh_ledger(db: Session,
                   bill: Bill,
                   user_id: Optional[int] = None,
                   reason: Optional[str] = None) -> Bill:
    bill.balance_due = compute_balance(bill.total_amount, bill.amount_paid,
                                       bill.insurance_approved_amount)
    target = ledger_status(bill)
    if target and target != bill.status:
        transition(db,
                   bill,
                   target,
                   changed_by=user_id,
                   reason=reason,
                   metadata={"balance_due": format(bill.balance_due, "f")})
    return bill


# ============================================================
# Payments
# ============================================================
def validate_payment(bill: Bill, payment_in: Any) -> None:
    """Every check runs before anything is written."""
    if bill.status == BillStatus.PAID.value:
        raise InvalidPaymentError(
            f"Bill {bill.bill_number} is already fully paid")
    if bill.status == BillStatus.VOID.value:
        raise InvalidPaymentError(
            f"Cannot record payment on voided bill {bill.bill_number}")

    method = str(field_of(payment_in, "method") or "")
    if method not in {m.value for m in PayMethod}:
        raise InvalidPaymentError(f"Unsupported payment method: {method!r}")

    try:
        amount = money2(field_of(payment_in, "amount"))
    except ValidationError as e:
        raise InvalidPaymentError(str(e)) from e
    if amount <= 0:
        raise InvalidPaymentError("Payment amount must be at least 0.01")

    if method in TXN_REQUIRED and not field_of(payment_in, "transaction_id"):
        raise InvalidPaymentError(
            f"Transaction ID is required for {method} payments")

    if method == PayMethod.CARD.value:
        last4 = str(field_of(payment_in, "card_last_four") or "")
        if len(last4) != 4 or not last4.isdigit():
            raise InvalidPaymentError(
                "Card payments need the last four card digits")
        card_type = str(field_of(payment_in, "card_type") or "")
        if card_type not in {c.value for c in CardType}:
            raise InvalidPaymentError(
                "Card type must be visa, mastercard, amex or discover")

    if method == PayMethod.BANK_TRANSFER.value and not field_of(
            payment_in, "bank_name"):
        raise InvalidPaymentError("Bank name is required for bank transfers")

    if method == PayMethod.CHECK.value and not field_of(
            payment_in, "check_number"):
        raise InvalidPaymentError("Check number is required for check payments")

    if method == PayMethod.CASH.value:
        tendered = field_of(payment_in, "amount_tendered")
        if tendered is not None and money2(tendered) < amount:
            raise InvalidPaymentError(
                "Amount tendered cannot be less than payment amount")

    claim_id = field_of(payment_in, "insurance_claim_id")
    if claim_id:
        if not any(int(c.id) == int(claim_id) for c in (bill.claims or [])):
            raise InvalidPaymentError(
                f"Insurance claim {claim_id} does not belong to this bill")


def _complete(db: Session, bill: Bill, pay: Payment,
              user_id: Optional[int]) -> None:
    old_paid = money2(bill.amount_paid)
    pay.status = PaymentStatus.COMPLETED.value
    bill.amount_paid = money2(old_paid + D(pay.amount))
    bill.last_payment_date = pay.payment_date
    record_field_change(db,
                        bill,
                        "amount_paid",
                        old_paid,
                        bill.amount_paid,
                        changed_by=user_id,
                        metadata={"payment_id": pay.id})
    refresh_ledger(db,
                   bill,
                   user_id=user_id,
                   reason=f"Payment received ({pay.method})")


def apply_payment(
    db: Session,
    bill_id: int,
    payment_in: Any,
    user_id: Optional[int] = None,
    confirm: bool = True,
    expected_version: Optional[int] = None,
) -> Payment:
    """
    Record money against a bill.
    confirm=False stores the payment as pending (e.g. awaiting a gateway
    callback); the ledger moves only on confirm_payment().
    """
    bill = load_bill(db, bill_id, expected_version=expected_version)
    validate_payment(bill, payment_in)

    method = str(field_of(payment_in, "method"))
    amount = money2(field_of(payment_in, "amount"))

    tendered = field_of(payment_in, "amount_tendered")
    change_due = ZERO
    if method == PayMethod.CASH.value and tendered is not None:
        change_due = money2(clamp0(money2(tendered) - amount))

    pay = Payment(
        method=method,
        amount=amount,
        payment_date=field_of(payment_in, "payment_date") or datetime.utcnow(),
        amount_tendered=money2(tendered) if tendered is not None else None,
        change_due=change_due,
        transaction_id=field_of(payment_in, "transaction_id"),
        reference_number=field_of(payment_in, "reference_number"),
        card_last_four=field_of(payment_in, "card_last_four"),
        card_type=field_of(payment_in, "card_type"),
        bank_name=field_of(payment_in, "bank_name"),
        check_number=field_of(payment_in, "check_number"),
        insurance_claim_id=field_of(payment_in, "insurance_claim_id"),
        notes=field_of(payment_in, "notes"),
        status=PaymentStatus.PENDING.value,
        received_by=user_id,
    )
    bill.payments.append(pay)
    db.flush()

    if confirm:
        _complete(db, bill, pay, user_id)
    save_bill(db, bill)

    log_activity(
        db,
        "Payment Processed" if confirm else "Payment Recorded",
        "Billing",
        f"{method} payment of {amount} on bill {bill.bill_number}"
        f" ({pay.status}); balance {bill.balance_due}",
        user_id=user_id,
        meta={"bill_id": bill.id, "payment_id": pay.id},
    )
    return pay


def _get_payment(db: Session, payment_id: int) -> Payment:
    pay = db.get(Payment, int(payment_id))
    if not pay:
        raise NotFoundError(f"Payment {payment_id} not found")
    return pay


def confirm_payment(db: Session,
                    payment_id: int,
                    user_id: Optional[int] = None,
                    transaction_id: Optional[str] = None) -> Payment:
    pay = _get_payment(db, payment_id)
    if pay.status != PaymentStatus.PENDING.value:
        raise InvalidPaymentError(
            f"Payment {pay.id} is {pay.status}; only pending payments can be confirmed")

    bill = load_bill(db, pay.bill_id)
    if bill.status == BillStatus.PAID.value:
        raise InvalidPaymentError(
            f"Bill {bill.bill_number} is already fully paid; fail payment {pay.id} instead")
    if bill.status == BillStatus.VOID.value:
        raise InvalidPaymentError(
            f"Cannot confirm payment on voided bill {bill.bill_number}")

    if transaction_id:
        pay.transaction_id = transaction_id
    _complete(db, bill, pay, user_id)
    save_bill(db, bill)

    log_activity(db,
                 "Payment Confirmed",
                 "Billing",
                 f"Payment {pay.id} of {pay.amount} confirmed on bill "
                 f"{bill.bill_number}",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "payment_id": pay.id})
    return pay


def fail_payment(db: Session,
                 payment_id: int,
                 reason: Optional[str] = None,
                 user_id: Optional[int] = None) -> Payment:
    pay = _get_payment(db, payment_id)
    if pay.status != PaymentStatus.PENDING.value:
        raise InvalidPaymentError(
            f"Payment {pay.id} is {pay.status}; only pending payments can fail")
    pay.status = PaymentStatus.FAILED.value
    if reason:
        pay.notes = reason
    db.flush()

    log_activity(db,
                 "Payment Failed",
                 "Billing",
                 f"Payment {pay.id} of {pay.amount} failed: {reason or '-'}",
                 severity="warning",
                 user_id=user_id,
                 meta={"bill_id": pay.bill_id, "payment_id": pay.id})
    return pay


def void_payment(db: Session,
                 payment_id: int,
                 reason: str,
                 user_id: Optional[int] = None,
                 expected_version: Optional[int] = None) -> Payment:
    """
    Reverse a completed payment (wrong bill, bounced check...).
    amount_paid drops by the payment amount and the bill status is
    re-derived from the ledger. Payments with refunds against them stay.
    """
    pay = _get_payment(db, payment_id)
    if pay.status == PaymentStatus.VOIDED.value:
        raise InvalidPaymentError(f"Payment {pay.id} is already voided")
    if pay.status != PaymentStatus.COMPLETED.value:
        raise InvalidPaymentError(
            f"Payment {pay.id} is {pay.status}; only completed payments can be voided")
    reason = _check_reason(reason, "Void reason")

    bill = load_bill(db, pay.bill_id, expected_version=expected_version)
    if bill.status == BillStatus.VOID.value:
        raise BillLockedError(
            f"Bill {bill.bill_number} is void; its payments are frozen")
    if any(r.payment_id == pay.id and r.status != RefundStatus.REJECTED.value
           for r in (bill.refunds or [])):
        raise ValidationError(
            f"Payment {pay.id} has refunds against it and cannot be voided")

    old_paid = money2(bill.amount_paid)
    new_paid = money2(old_paid - D(pay.amount))
    reserved = _reserved_refunds(bill)
    if new_paid < reserved:
        raise ValidationError(
            f"Voiding payment {pay.id} leaves {new_paid} paid, below "
            f"{reserved} held by open refunds")

    pay.status = PaymentStatus.VOIDED.value
    pay.voided_by = user_id
    pay.voided_at = datetime.utcnow()
    pay.void_reason = reason
    bill.amount_paid = new_paid

    record_field_change(db,
                        bill,
                        "amount_paid",
                        old_paid,
                        new_paid,
                        changed_by=user_id,
                        reason=f"Payment voided. Reason: {reason}",
                        metadata={"payment_id": pay.id})
    refresh_ledger(db,
                   bill,
                   user_id=user_id,
                   reason=f"Payment {pay.id} voided")
    save_bill(db, bill)

    log_activity(db,
                 "Payment Voided",
                 "Billing",
                 f"Voided payment {pay.id} of {pay.amount} on bill "
                 f"{bill.bill_number}. Reason: {reason}",
                 severity="warning",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "payment_id": pay.id})
    return pay


# ============================================================
# Refunds (request -> approve | reject, approve -> process)
# ============================================================
def _get_refund(db: Session, refund_id: int) -> BillRefund:
    r = db.get(BillRefund, int(refund_id))
    if not r:
        raise NotFoundError(f"Refund {refund_id} not found")
    return r


def _refund_lock_check(bill: Bill) -> None:
    if bill.status == BillStatus.VOID.value:
        raise BillLockedError(
            f"Bill {bill.bill_number} is void; refunds are not allowed")


def _already_refunded(bill: Bill, *, payment_id=None, item_id=None) -> Decimal:
    total = ZERO
    for r in bill.refunds or []:
        if r.status == RefundStatus.REJECTED.value:
            continue
        if payment_id is not None and r.payment_id == payment_id:
            total += D(r.refund_amount)
        if item_id is not None and r.bill_item_id == item_id:
            total += D(r.refund_amount)
    return money2(total)


def _reserved_refunds(bill: Bill) -> Decimal:
    """Requested and approved refunds, not yet taken off amount_paid."""
    open_states = {RefundStatus.REQUESTED.value, RefundStatus.APPROVED.value}
    return money2(
        sum((D(r.refund_amount) for r in (bill.refunds or [])
             if r.status in open_states), ZERO))


def _check_reason(reason: Optional[str], what: str) -> str:
    reason = (reason or "").strip()
    if len(reason) < MIN_REASON_LEN:
        raise ValidationError(
            f"{what} must be at least {MIN_REASON_LEN} characters")
    return reason


def request_refund(db: Session,
                   bill_id: int,
                   refund_in: Any,
                   user_id: Optional[int] = None) -> BillRefund:
    bill = load_bill(db, bill_id)
    _refund_lock_check(bill)

    payment_id = field_of(refund_in, "payment_id")
    item_id = field_of(refund_in, "bill_item_id")
    if bool(payment_id) == bool(item_id):
        raise ValidationError(
            "A refund targets exactly one of payment_id or bill_item_id")

    method = str(field_of(refund_in, "refund_method") or "")
    if method not in {m.value for m in RefundMethod}:
        raise ValidationError(f"Unsupported refund method: {method!r}")
    reason = _check_reason(field_of(refund_in, "refund_reason"),
                           "Refund reason")

    amount = money2(field_of(refund_in, "refund_amount"))
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than zero")

    if payment_id:
        target = next((p for p in bill.payments if p.id == int(payment_id)),
                      None)
        if not target:
            raise ValidationError(
                f"Payment {payment_id} does not belong to this bill")
        if target.status != PaymentStatus.COMPLETED.value:
            raise ValidationError("Only completed payments can be refunded")
        target_amount = money2(target.amount)
        used = _already_refunded(bill, payment_id=target.id)
    else:
        target = next((i for i in bill.items if i.id == int(item_id)), None)
        if not target:
            raise ValidationError(
                f"Line item {item_id} does not belong to this bill")
        target_amount = money2(target.net_amount)
        used = _already_refunded(bill, item_id=target.id)

    refundable = money2(clamp0(target_amount - used))
    if amount > refundable:
        raise ValidationError(
            f"Refund amount {amount} exceeds refundable amount {refundable}")
    # payment and item refunds draw on the same money
    available = money2(clamp0(money2(bill.amount_paid) - _reserved_refunds(bill)))
    if amount > available:
        raise ValidationError(
            f"Refund amount {amount} exceeds refundable balance {available} "
            f"on bill {bill.bill_number}")

    refund = BillRefund(
        reference_number=next_refund_number(db),
        payment_id=int(payment_id) if payment_id else None,
        bill_item_id=int(item_id) if item_id else None,
        refund_amount=amount,
        refund_type=(RefundType.FULL.value
                     if amount == target_amount else RefundType.PARTIAL.value),
        refund_method=method,
        refund_reason=reason,
        notes=field_of(refund_in, "notes"),
        status=RefundStatus.REQUESTED.value,
        requested_by=user_id,
    )
    bill.refunds.append(refund)
    db.flush()

    log_activity(db,
                 "Refund Requested",
                 "Billing",
                 f"Refund {refund.reference_number} of {amount} requested on "
                 f"bill {bill.bill_number}",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "refund_id": refund.id})
    return refund


def approve_refund(db: Session,
                   refund_id: int,
                   user_id: Optional[int] = None,
                   notes: Optional[str] = None) -> BillRefund:
    refund = _get_refund(db, refund_id)
    if refund.status != RefundStatus.REQUESTED.value:
        raise RefundStateError(
            f"Refund {refund.reference_number} is {refund.status}; only requested refunds can be approved")
    _refund_lock_check(refund.bill)

    refund.status = RefundStatus.APPROVED.value
    refund.approved_by = user_id
    refund.approved_at = datetime.utcnow()
    if notes:
        refund.notes = notes
    db.flush()

    log_activity(db,
                 "Refund Approved",
                 "Billing",
                 f"Refund {refund.reference_number} approved",
                 user_id=user_id,
                 meta={"bill_id": refund.bill_id, "refund_id": refund.id})
    return refund


def reject_refund(db: Session,
                  refund_id: int,
                  reason: str,
                  user_id: Optional[int] = None) -> BillRefund:
    refund = _get_refund(db, refund_id)
    if refund.status != RefundStatus.REQUESTED.value:
        raise RefundStateError(
            f"Refund {refund.reference_number} is {refund.status}; only requested refunds can be rejected")
    reason = _check_reason(reason, "Rejection reason")

    refund.status = RefundStatus.REJECTED.value
    refund.rejection_reason = reason
    refund.approved_by = user_id
    refund.approved_at = datetime.utcnow()
    db.flush()

    log_activity(db,
                 "Refund Rejected",
                 "Billing",
                 f"Refund {refund.reference_number} rejected: {reason}",
                 severity="warning",
                 user_id=user_id,
                 meta={"bill_id": refund.bill_id, "refund_id": refund.id})
    return refund


def process_refund(db: Session,
                   refund_id: int,
                   user_id: Optional[int] = None,
                   expected_version: Optional[int] = None) -> BillRefund:
    """The only refund step that moves money."""
    refund = _get_refund(db, refund_id)
    if refund.status != RefundStatus.APPROVED.value:
        raise RefundStateError(
            f"Refund {refund.reference_number} is {refund.status}; only approved refunds can be processed")

    bill = load_bill(db, refund.bill_id, expected_version=expected_version)
    _refund_lock_check(bill)

    old_paid = money2(bill.amount_paid)
    amount = money2(refund.refund_amount)
    if amount > old_paid:
        raise ValidationError(
            f"Refund {refund.reference_number} of {amount} exceeds amount paid "
            f"{old_paid} on bill {bill.bill_number}")
    bill.amount_paid = money2(old_paid - amount)
    refund.status = RefundStatus.PROCESSED.value
    refund.processed_by = user_id
    refund.processed_at = datetime.utcnow()

    record_field_change(db,
                        bill,
                        "amount_paid",
                        old_paid,
                        bill.amount_paid,
                        changed_by=user_id,
                        reason=refund.refund_reason,
                        metadata={"refund_id": refund.id})
    refresh_ledger(db,
                   bill,
                   user_id=user_id,
                   reason=f"Refund {refund.reference_number} processed")
    save_bill(db, bill)

    log_activity(db,
                 "Refund Processed",
                 "Billing",
                 f"Refund {refund.reference_number} of {refund.refund_amount} "
                 f"processed on bill {bill.bill_number}",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "refund_id": refund.id})
    return refund


# ============================================================
# Statistics
# ============================================================
def payment_statistics(bill: Bill) -> Dict[str, Any]:
    completed = [
        p for p in (bill.payments or [])
        if p.status == PaymentStatus.COMPLETED.value
    ]
    refunded = sum((D(r.refund_amount) for r in (bill.refunds or [])
                    if r.status == RefundStatus.PROCESSED.value), ZERO)
    last = max((p.payment_date for p in completed if p.payment_date),
               default=None)
    return {
        "payment_count": len(completed),
        "total_paid": money2(sum((D(p.amount) for p in completed), ZERO)),
        "last_payment_date": last,
        "methods": sorted({p.method for p in completed}),
        "refunded_total": money2(refunded),
    }
