# FILE: hospital_billing/services/billing_events.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hospital_billing.core.config import settings
from hospital_billing.models.billing import ItemType
from hospital_billing.services.audit import log_activity
from hospital_billing.services.billing_errors import DuplicateBillingError
from hospital_billing.services.billing_math import ZERO, money2
from hospital_billing.services.billing_service import (
    add_item,
    create_bill,
    find_open_bill,
    find_source_item,
)

logger = logging.getLogger(__name__)

SOURCE_APPOINTMENT = "appointment"
SOURCE_LAB_RESULT = "lab_result"


# ============================================================
# Events (published after the producer's own commit)
# ============================================================
@dataclass(frozen=True)
class AppointmentCompleted:
    appointment_id: int
    patient_id: int
    doctor_id: Optional[int] = None
    doctor_name: Optional[str] = None
    fee: Decimal = ZERO
    discount_percentage: Decimal = ZERO
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class LabResultCompleted:
    result_id: int
    patient_id: int
    test_name: str
    test_code: Optional[str] = None
    cost: Decimal = ZERO
    completed_at: Optional[datetime] = None


@dataclass
class HookResult:
    # billed | duplicate | skipped | failed
    outcome: str
    bill_id: Optional[int] = None
    bill_item_id: Optional[int] = None
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# Handlers
# ============================================================
def _bill_source(db: Session, patient_id: int, doctor_id: Optional[int],
                 line: Dict[str, Any]) -> HookResult:
    # -----------------------------
    # 1) Idempotency
    # -----------------------------
    existing = find_source_item(db, line["source_type"], line["source_id"])
    if existing:
        return HookResult("duplicate",
                          bill_id=existing.bill_id,
                          bill_item_id=existing.id,
                          message="already billed")

    # -----------------------------
    # 2) Open bill for the patient (or a new one)
    # -----------------------------
    bill = find_open_bill(db, patient_id)
    if bill is None:
        bill = create_bill(db,
                           patient_id=patient_id,
                           doctor_id=doctor_id,
                           issue=True,
                           notes="Created by completion hook")

    # -----------------------------
    # 3) Add line
    # -----------------------------
    try:
        with db.begin_nested():
            item = add_item(db, bill.id, line)
    except DuplicateBillingError as e:
        return HookResult("duplicate",
                          bill_id=e.bill_id,
                          bill_item_id=e.bill_item_id,
                          message=str(e))
    except IntegrityError:
        # lost a race on uq_bill_items_source
        ex = find_source_item(db, line["source_type"], line["source_id"])
        if ex is None:
            raise
        return HookResult("duplicate",
                          bill_id=ex.bill_id,
                          bill_item_id=ex.id,
                          message="already billed")

    return HookResult("billed", bill_id=bill.id, bill_item_id=item.id)


def create_bill_item_for_appointment(
        db: Session, event: AppointmentCompleted) -> HookResult:
    fee = money2(event.fee)
    if fee <= 0:
        logger.warning("Appointment %s has no fee (%s); not billed",
                       event.appointment_id, event.fee)
        return HookResult("skipped", message="no consultation fee")

    doctor = (event.doctor_name or "").strip()
    line = {
        "item_type": ItemType.APPOINTMENT.value,
        "source_type": SOURCE_APPOINTMENT,
        "source_id": int(event.appointment_id),
        "category": "Consultation",
        "description":
        f"Consultation - Dr. {doctor}" if doctor else "Consultation",
        "quantity": 1,
        "unit_price": fee,
        "discount_percentage": money2(event.discount_percentage),
    }
    res = _bill_source(db, event.patient_id, event.doctor_id, line)
    if res.outcome == "billed":
        log_activity(db,
                     "Bill Item Created",
                     "Billing",
                     f"Consultation fee {fee} billed for appointment "
                     f"{event.appointment_id}",
                     meta={
                         "bill_id": res.bill_id,
                         "bill_item_id": res.bill_item_id,
                         "appointment_id": event.appointment_id,
                     })
    return res


def create_bill_item_for_lab_result(db: Session,
                                    event: LabResultCompleted) -> HookResult:
    cost = money2(event.cost)
    if cost <= 0:
        logger.warning("Lab result %s (%s) has no cost; not billed",
                       event.result_id, event.test_name)
        return HookResult("skipped", message="no test cost")

    name = event.test_name
    if event.test_code:
        name = f"{name} ({event.test_code})"
    line = {
        "item_type": ItemType.LAB_TEST.value,
        "source_type": SOURCE_LAB_RESULT,
        "source_id": int(event.result_id),
        "category": "Laboratory",
        "description": f"Lab Test - {name}",
        "quantity": 1,
        "unit_price": cost,
    }
    res = _bill_source(db, event.patient_id, None, line)
    if res.outcome == "billed":
        log_activity(db,
                     "Bill Item Created",
                     "Billing",
                     f"Lab test {name} ({cost}) billed for result "
                     f"{event.result_id}",
                     meta={
                         "bill_id": res.bill_id,
                         "bill_item_id": res.bill_item_id,
                         "lab_result_id": event.result_id,
                     })
    return res


# ============================================================
# Bus
# ============================================================
Handler = Callable[[Session, Any], HookResult]


def _event_meta(event: Any) -> Dict[str, Any]:
    out = {}
    for k, v in asdict(event).items():
        out[k] = v if isinstance(v, (int, str, type(None))) else str(v)
    out["event"] = type(event).__name__
    return out


class BillingEventBus:
    """
    In-process dispatcher for completion events.
    Each handler gets its own session and commits on its own; a failing
    handler is logged and audited and never reaches the publisher.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from hospital_billing.db.session import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self._handlers: Dict[type, List[Handler]] = {}

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event: Any) -> List[HookResult]:
        if not settings.BILLING_AUTOCREATE:
            logger.info("Billing autocreate disabled; %s ignored",
                        type(event).__name__)
            return [HookResult("skipped", message="autocreate disabled")]
        return [self._run(h, event) for h in self._handlers.get(type(event), [])]

    def _run(self, handler: Handler, event: Any) -> HookResult:
        db = self.session_factory()
        try:
            res = handler(db, event)
            db.commit()
            return res
        except Exception as e:
            db.rollback()
            logger.exception("Billing hook %s failed for %s",
                             getattr(handler, "__name__", handler), event)
            self._record_failure(event, e)
            return HookResult("failed", message=str(e))
        finally:
            db.close()

    def _record_failure(self, event: Any, exc: Exception) -> None:
        db = self.session_factory()
        try:
            log_activity(db,
                         "Bill Item Creation Failed",
                         "Billing",
                         f"{type(event).__name__} for patient "
                         f"{getattr(event, 'patient_id', '?')}: {exc}",
                         severity="error",
                         meta=_event_meta(event))
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Could not record hook failure for %s", event)
        finally:
            db.close()


def register_default_handlers(bus: BillingEventBus) -> BillingEventBus:
    bus.subscribe(AppointmentCompleted, create_bill_item_for_appointment)
    bus.subscribe(LabResultCompleted, create_bill_item_for_lab_result)
    return bus


def make_event_bus(
        session_factory: Optional[Callable[[], Session]] = None
) -> BillingEventBus:
    return register_default_handlers(BillingEventBus(session_factory))
