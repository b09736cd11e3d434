# FILE: hospital_billing/services/billing_store.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from hospital_billing.models.billing import Bill, BillStatusHistory
from hospital_billing.services.billing_errors import (
    BillNotFoundError,
    ConcurrencyConflictError,
)

logger = logging.getLogger(__name__)


def load_bill(
    db: Session,
    bill_id: int,
    expected_version: Optional[int] = None,
    for_update: bool = True,
) -> Bill:
    """
    Re-read the bill row (row lock on MySQL) before any read-modify-write.
    expected_version: the version the caller last saw; a mismatch means
    someone else already wrote the bill.
    """
    q = db.query(Bill).filter(Bill.id == int(bill_id))
    if for_update:
        q = q.with_for_update().populate_existing()
    bill = q.first()
    if not bill:
        raise BillNotFoundError(f"Bill {bill_id} not found")

    if expected_version is not None and int(bill.version) != int(
            expected_version):
        raise ConcurrencyConflictError(
            f"Bill {bill.bill_number} was modified (version {bill.version}, "
            f"expected {expected_version}). Reload and retry.")
    return bill


def save_bill(db: Session, bill: Bill) -> Bill:
    # touching updated_at keeps the row dirty so the version always moves
    bill.updated_at = datetime.utcnow()
    try:
        db.flush()
    except StaleDataError as e:
        logger.warning("Concurrent write on bill id=%s: %s", bill.id, e)
        raise ConcurrencyConflictError(
            "Bill was modified by another user. Reload and retry.") from e
    return bill


def append_status_history(db: Session,
                          entry: BillStatusHistory) -> BillStatusHistory:
    db.add(entry)
    return entry
