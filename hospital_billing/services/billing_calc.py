# FILE: hospital_billing/services/billing_calc.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List

from hospital_billing.models.billing import DiscountType
from hospital_billing.services.billing_errors import ValidationError
from hospital_billing.services.billing_math import (
    D,
    HUNDRED,
    ZERO,
    clamp0,
    money2,
    pct_of,
)


@dataclass(frozen=True)
class LineAmounts:
    gross: Decimal
    discount: Decimal
    net: Decimal


@dataclass(frozen=True)
class BillTotals:
    gross_total: Decimal
    line_discount_total: Decimal
    sub_total: Decimal
    bill_discount_amount: Decimal
    total_discount: Decimal
    taxable_amount: Decimal
    total_tax: Decimal
    total_amount: Decimal
    lines: tuple = ()


def field_of(item: Any, name: str):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def compute_line(item: Any) -> LineAmounts:
    """
    gross    = qty * unit_price
    discount = discount_amount + gross * discount_percentage / 100  (additive)
    net      = max(0, gross - discount); discount is capped at gross
    """
    qty = D(field_of(item, "quantity"))
    unit_price = D(field_of(item, "unit_price"))
    disc_amt = D(field_of(item, "discount_amount"))
    disc_pct = D(field_of(item, "discount_percentage"))

    if qty < 1:
        raise ValidationError("Quantity must be at least 1")
    if unit_price < 0:
        raise ValidationError("Unit price cannot be negative")
    if disc_amt < 0:
        raise ValidationError("Discount amount cannot be negative")
    if disc_pct < 0 or disc_pct > HUNDRED:
        raise ValidationError("Discount percentage must be between 0 and 100")

    gross = money2(qty * unit_price)
    discount = money2(disc_amt + pct_of(gross, disc_pct))
    if discount > gross:
        discount = gross
    net = money2(clamp0(gross - discount))
    return LineAmounts(gross=gross, discount=discount, net=net)


def validate_bill_discount(bill_discount, bill_discount_type, tax_rate) -> None:
    types = {t.value for t in DiscountType}
    if str(bill_discount_type) not in types:
        raise ValidationError(
            'Invalid discount type. Must be "fixed" or "percentage".')
    if D(bill_discount) < 0:
        raise ValidationError("Discount amount cannot be negative.")
    if (str(bill_discount_type) == DiscountType.PERCENTAGE.value
            and D(bill_discount) > HUNDRED):
        raise ValidationError("Percentage discount cannot exceed 100%.")
    if D(tax_rate) < 0:
        raise ValidationError("Tax rate cannot be negative.")


def aggregate(
    line_items: Iterable[Any],
    bill_discount=0,
    bill_discount_type: str = DiscountType.FIXED.value,
    tax_rate=0,
) -> BillTotals:
    """
    Bill-level discount and tax apply to the post-item-discount subtotal:

      subtotal = sum(net)
      bill_discount_amount = subtotal * pct / 100 | fixed  (capped at subtotal)
      taxable = max(0, subtotal - bill_discount_amount)
      tax     = taxable * tax_rate / 100
      total   = max(0, taxable + tax)

    Every step is rounded half-up to cents.
    """
    validate_bill_discount(bill_discount, bill_discount_type, tax_rate)

    lines: List[LineAmounts] = [compute_line(it) for it in line_items]

    gross_total = money2(sum((ln.gross for ln in lines), ZERO))
    line_disc_total = money2(sum((ln.discount for ln in lines), ZERO))
    sub_total = money2(sum((ln.net for ln in lines), ZERO))

    if str(bill_discount_type) == DiscountType.PERCENTAGE.value:
        bill_disc = pct_of(sub_total, bill_discount)
    else:
        bill_disc = money2(bill_discount)
    if bill_disc > sub_total:
        bill_disc = sub_total

    taxable = money2(clamp0(sub_total - bill_disc))
    tax = pct_of(taxable, tax_rate)
    total = money2(clamp0(taxable + tax))

    return BillTotals(
        gross_total=gross_total,
        line_discount_total=line_disc_total,
        sub_total=sub_total,
        bill_discount_amount=bill_disc,
        total_discount=money2(line_disc_total + bill_disc),
        taxable_amount=taxable,
        total_tax=tax,
        total_amount=total,
        lines=tuple(lines),
    )


def compute_balance(total_amount, amount_paid,
                    insurance_approved_amount) -> Decimal:
    return money2(
        clamp0(D(total_amount) - D(amount_paid) -
               D(insurance_approved_amount)))


def recompute_bill(bill) -> BillTotals:
    """
    Recalculate stored aggregates of a Bill from its raw items and ledger.
    Writes back per-line amounts too. Caller guards paid/void bills.
    """
    items = list(bill.items or [])
    totals = aggregate(items, bill.discount_value, bill.discount_type,
                       bill.tax_rate)

    for it, amounts in zip(items, totals.lines):
        it.gross_amount = amounts.gross
        it.line_discount = amounts.discount
        it.net_amount = amounts.net

    bill.gross_total = totals.gross_total
    bill.line_discount_total = totals.line_discount_total
    bill.sub_total = totals.sub_total
    bill.bill_discount_amount = totals.bill_discount_amount
    bill.total_discount = totals.total_discount
    bill.total_tax = totals.total_tax
    bill.total_amount = totals.total_amount

    bill.balance_due = compute_balance(totals.total_amount, bill.amount_paid,
                                       bill.insurance_approved_amount)
    return totals
