# hospital_billing/services/id_gen.py
from __future__ import annotations

import secrets
import string
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from hospital_billing.core.config import settings
from hospital_billing.models.billing import Bill, BillRefund, InsuranceClaim

_ALNUM = string.ascii_uppercase + string.digits


# ----------------------------
# Time helpers (Hospital TZ)
# ----------------------------
def _hospital_tz() -> ZoneInfo:
    return ZoneInfo(getattr(settings, "TIMEZONE", "UTC"))


def today_local() -> date:
    return datetime.now(timezone.utc).astimezone(_hospital_tz()).date()


def _rand(n: int) -> str:
    return "".join(secrets.choice(_ALNUM) for _ in range(n))


def _unique(db: Session, model, column, prefix: str, width: int) -> str:
    stamp = today_local().strftime("%Y%m%d")
    for _ in range(20):
        candidate = f"{prefix}-{stamp}-{_rand(width)}"
        taken = db.query(model.id).filter(column == candidate).first()
        if not taken:
            return candidate
    raise RuntimeError(f"Could not allocate a unique {prefix} number")


def next_bill_number(db: Session) -> str:
    """BL-YYYYMMDD-XXXX"""
    return _unique(db, Bill, Bill.bill_number, "BL", 4)


def next_claim_number(db: Session) -> str:
    """CLM-YYYYMMDD-XXXXXX"""
    return _unique(db, InsuranceClaim, InsuranceClaim.claim_number, "CLM", 6)


def next_refund_number(db: Session) -> str:
    """RFD-YYYYMMDD-XXXXXX"""
    return _unique(db, BillRefund, BillRefund.reference_number, "RFD", 6)
