"""Unit tests for money rounding, line amounts and bill aggregation."""

from decimal import Decimal

import pytest

from hospital_billing.services.billing_calc import aggregate, compute_balance, compute_line
from hospital_billing.services.billing_errors import ValidationError
from hospital_billing.services.billing_math import D, money2, pct_of


def _line(qty=1, price="100", amt="0", pct="0"):
    return {
        "quantity": qty,
        "unit_price": Decimal(price),
        "discount_amount": Decimal(amt),
        "discount_percentage": Decimal(pct),
    }


class TestMoney:
    """Tests for the rounding helpers."""

    def test_half_up_to_cents(self):
        assert money2("2.675") == Decimal("2.68")
        assert money2("2.665") == Decimal("2.67")
        assert money2(Decimal("-1.005")) == Decimal("-1.01")

    def test_float_goes_through_str(self):
        """0.1 + 0.2 as floats must not leak binary noise."""
        assert D(0.1) + D(0.2) == Decimal("0.3")

    def test_none_is_zero(self):
        assert D(None) == 0
        assert money2(None) == Decimal("0.00")

    def test_pct_of_rounds(self):
        assert pct_of("43.50", "20") == Decimal("8.70")
        assert pct_of("10.05", "50") == Decimal("5.03")

    def test_garbage_amount_rejected(self):
        with pytest.raises(ValidationError):
            D("ten dollars")


class TestComputeLine:
    """Tests for per-line gross / discount / net."""

    def test_percentage_discount(self):
        """qty 1 at 100 with 10% off nets 90."""
        amounts = compute_line(_line(pct="10"))
        assert amounts.gross == Decimal("100.00")
        assert amounts.discount == Decimal("10.00")
        assert amounts.net == Decimal("90.00")

    def test_fixed_and_percentage_are_additive(self):
        amounts = compute_line(_line(qty=2, price="50", amt="5", pct="10"))
        assert amounts.gross == Decimal("100.00")
        assert amounts.discount == Decimal("15.00")
        assert amounts.net == Decimal("85.00")

    def test_discount_capped_at_gross(self):
        amounts = compute_line(_line(price="20", amt="15", pct="50"))
        assert amounts.discount == Decimal("20.00")
        assert amounts.net == Decimal("0.00")

    def test_accepts_objects(self):
        class Item:
            quantity = 3
            unit_price = Decimal("1.10")
            discount_amount = None
            discount_percentage = None

        assert compute_line(Item()).net == Decimal("3.30")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"qty": 0},
            {"price": "-1"},
            {"pct": "101"},
            {"pct": "-1"},
            {"amt": "-0.01"},
        ],
    )
    def test_invalid_lines_rejected(self, kwargs):
        with pytest.raises(ValidationError):
            compute_line(_line(**kwargs))


class TestAggregate:
    """Tests for bill-level discount, tax and totals."""

    def test_fixed_discount_then_tax(self):
        """Net 90, fixed discount 5, tax 10% -> total 93.50."""
        totals = aggregate([_line(pct="10")], Decimal("5"), "fixed", Decimal("10"))
        assert totals.sub_total == Decimal("90.00")
        assert totals.bill_discount_amount == Decimal("5.00")
        assert totals.taxable_amount == Decimal("85.00")
        assert totals.total_tax == Decimal("8.50")
        assert totals.total_amount == Decimal("93.50")

    def test_reconciliation_identities(self):
        lines = [_line(pct="10"), _line(qty=3, price="19.99", amt="2.50")]
        totals = aggregate(lines, Decimal("7.5"), "percentage", Decimal("18"))
        assert totals.total_amount == (totals.gross_total - totals.total_discount +
                                       totals.total_tax)
        assert totals.sub_total == totals.gross_total - totals.line_discount_total
        assert totals.total_discount == (totals.line_discount_total +
                                         totals.bill_discount_amount)

    def test_percentage_bill_discount(self):
        totals = aggregate([_line(price="200")], Decimal("25"), "percentage", 0)
        assert totals.bill_discount_amount == Decimal("50.00")
        assert totals.total_amount == Decimal("150.00")

    def test_bill_discount_capped_at_subtotal(self):
        totals = aggregate([_line(price="30")], Decimal("45"), "fixed", Decimal("10"))
        assert totals.bill_discount_amount == Decimal("30.00")
        assert totals.total_tax == Decimal("0.00")
        assert totals.total_amount == Decimal("0.00")

    def test_empty_bill(self):
        totals = aggregate([], 0, "fixed", Decimal("5"))
        assert totals.total_amount == Decimal("0.00")
        assert totals.lines == ()

    @pytest.mark.parametrize(
        "discount, kind, tax",
        [
            ("5", "bogus", "0"),
            ("-1", "fixed", "0"),
            ("101", "percentage", "0"),
            ("0", "fixed", "-5"),
        ],
    )
    def test_invalid_bill_inputs(self, discount, kind, tax):
        with pytest.raises(ValidationError):
            aggregate([_line()], Decimal(discount), kind, Decimal(tax))

    def test_balance_never_negative(self):
        assert compute_balance("93.50", "60", "34.80") == Decimal("0.00")
        assert compute_balance("93.50", "0", "34.80") == Decimal("58.70")
