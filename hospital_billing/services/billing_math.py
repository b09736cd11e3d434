# hospital_billing/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from hospital_billing.services.billing_errors import ValidationError

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
Q2 = Decimal("0.01")


def D(x) -> Decimal:
    if x is None or x == "":
        return Decimal("0")
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Not a valid amount: {x!r}")


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def clamp0(x) -> Decimal:
    v = D(x)
    return v if v > 0 else ZERO


def pct_of(amount, pct) -> Decimal:
    return money2(D(amount) * D(pct) / HUNDRED)


def dec_s(x) -> str:
    return format(money2(x), "f")
