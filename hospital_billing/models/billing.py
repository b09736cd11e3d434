# FILE: hospital_billing/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    Date,
    DateTime,
    Index,
    ForeignKey,
    UniqueConstraint,
    Text,
    JSON,
    event,
)
from sqlalchemy.orm import relationship

from hospital_billing.db.base import Base


# ============================================================
# Enums (stored as plain strings)
# ============================================================
class BillStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    VOID = "void"


# derived at read time only, never stored
OVERDUE = "overdue"


class DiscountType(str, enum.Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class ItemType(str, enum.Enum):
    APPOINTMENT = "appointment"
    LAB_TEST = "lab_test"
    PHARMACY = "pharmacy"
    DEPARTMENT_SERVICE = "department_service"
    MANUAL = "manual"


class PayMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    INSURANCE = "insurance"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHECK = "check"


class CardType(str, enum.Enum):
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    DISCOVER = "discover"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    VOIDED = "voided"


class RefundStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"


class RefundType(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


class RefundMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"


class ClaimStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    PARTIAL_APPROVED = "partial_approved"
    REJECTED = "rejected"
    APPEALED = "appealed"


def _q2(v) -> Decimal:
    return Decimal(str(v if v is not None else 0))


# ============================================================
# Insurance policy
# ============================================================
class PatientInsurance(Base):
    """
    A patient's coverage policy.
    deductible_met / annual_used_amount only ever grow (claim approvals).
    """
    __tablename__ = "patient_insurances"
    __table_args__ = (Index("ix_patient_insurances_patient", "patient_id"), )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False)

    provider_name = Column(String(199), nullable=False)
    policy_number = Column(String(100), nullable=False)
    member_id = Column(String(100), nullable=True)

    co_pay_amount = Column(Numeric(12, 2), default=0, nullable=False)
    co_pay_percentage = Column(Numeric(5, 2), default=0, nullable=False)
    deductible_amount = Column(Numeric(12, 2), default=0, nullable=False)
    deductible_met = Column(Numeric(12, 2), default=0, nullable=False)
    # NULL = unlimited
    annual_max_coverage = Column(Numeric(12, 2), nullable=True)
    annual_used_amount = Column(Numeric(12, 2), default=0, nullable=False)

    coverage_start_date = Column(Date, nullable=True)
    coverage_end_date = Column(Date, nullable=True)

    is_primary = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)

    claims = relationship("InsuranceClaim", back_populates="patient_insurance")

    @property
    def remaining_deductible(self) -> Decimal:
        return max(
            Decimal("0"),
            _q2(self.deductible_amount) - _q2(self.deductible_met))

    @property
    def remaining_annual_coverage(self) -> Optional[Decimal]:
        if self.annual_max_coverage is None:
            return None
        return max(
            Decimal("0"),
            _q2(self.annual_max_coverage) - _q2(self.annual_used_amount))

    def is_valid(self, on: Optional[date] = None) -> bool:
        on = on or date.today()
        if not self.is_active:
            return False
        if self.coverage_start_date and self.coverage_start_date > on:
            return False
        if self.coverage_end_date and self.coverage_end_date < on:
            return False
        return True


# ============================================================
# Bill
# ============================================================
class Bill(Base):
    """
    One patient bill (invoice).

    Stored aggregates are always the output of billing_calc.aggregate()
    over the current items plus the payment/insurance ledger:

      gross_total          = sum(qty * unit_price)
      line_discount_total  = sum(line discounts)
      sub_total            = sum(line net)
      bill_discount_amount = bill-level discount applied on sub_total
      total_discount       = line_discount_total + bill_discount_amount
      total_tax            = (sub_total - bill_discount_amount) * tax_rate / 100
      total_amount         = gross_total - total_discount + total_tax
      balance_due          = max(0, total_amount - amount_paid - insurance_approved_amount)

    `version` is the optimistic-concurrency counter.
    """

    __tablename__ = "bills"
    __table_args__ = (
        Index("ix_bills_patient_status", "patient_id", "status"),
        Index("ix_bills_due_date", "due_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_number = Column(String(32), unique=True, index=True, nullable=False)

    patient_id = Column(Integer, nullable=False)
    doctor_id = Column(Integer, nullable=True)
    primary_insurance_id = Column(Integer,
                                  ForeignKey("patient_insurances.id"),
                                  nullable=True)

    bill_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)

    # draft | pending | partial | paid | void
    status = Column(String(16), nullable=False, default=BillStatus.DRAFT.value)

    # raw bill-level discount input: value + mode (fixed | percentage)
    discount_value = Column(Numeric(12, 2), default=0, nullable=False)
    discount_type = Column(String(12),
                           default=DiscountType.FIXED.value,
                           nullable=False)
    tax_rate = Column(Numeric(5, 2), default=0, nullable=False)

    # Totals
    gross_total = Column(Numeric(12, 2), default=0, nullable=False)
    line_discount_total = Column(Numeric(12, 2), default=0, nullable=False)
    sub_total = Column(Numeric(12, 2), default=0, nullable=False)
    bill_discount_amount = Column(Numeric(12, 2), default=0, nullable=False)
    total_discount = Column(Numeric(12, 2), default=0, nullable=False)
    total_tax = Column(Numeric(12, 2), default=0, nullable=False)
    total_amount = Column(Numeric(12, 2), default=0, nullable=False)

    # Ledger
    amount_paid = Column(Numeric(12, 2), default=0, nullable=False)
    insurance_claim_amount = Column(Numeric(12, 2), default=0, nullable=False)
    insurance_approved_amount = Column(Numeric(12, 2),
                                       default=0,
                                       nullable=False)
    patient_responsibility = Column(Numeric(12, 2), default=0, nullable=False)
    balance_due = Column(Numeric(12, 2), default=0, nullable=False)
    last_payment_date = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)

    voided_at = Column(DateTime, nullable=True)
    voided_by = Column(Integer, nullable=True)
    void_reason = Column(String(1000), nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    version = Column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    primary_insurance = relationship("PatientInsurance")

    items = relationship(
        "BillItem",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="[BillItem.seq, BillItem.id]",
    )
    payments = relationship(
        "Payment",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )
    refunds = relationship(
        "BillRefund",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillRefund.id",
    )
    claims = relationship(
        "InsuranceClaim",
        back_populates="bill",
        order_by="InsuranceClaim.id",
    )
    # history is append-only: never cascade deletes into it
    status_history = relationship(
        "BillStatusHistory",
        back_populates="bill",
        cascade="save-update, merge",
        passive_deletes="all",
        order_by="BillStatusHistory.id",
    )

    @property
    def amount_due(self) -> Decimal:
        return _q2(self.balance_due)

    @property
    def payment_status(self) -> str:
        if self.status == BillStatus.VOID.value:
            return BillStatus.VOID.value
        if self.status == BillStatus.DRAFT.value:
            return BillStatus.PENDING.value
        return self.status

    @property
    def is_voided(self) -> bool:
        return self.status == BillStatus.VOID.value


class BillItem(Base):
    __tablename__ = "bill_items"
    __table_args__ = (
        # one line per billed source record (appointment, lab result...)
        UniqueConstraint(
            "source_type",
            "source_id",
            name="uq_bill_items_source",
        ),
        Index("ix_bill_items_bill", "bill_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(
        Integer,
        ForeignKey("bills.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for display
    seq = Column(Integer, default=1, nullable=False)

    # appointment | lab_test | pharmacy | department_service | manual
    item_type = Column(String(32),
                       nullable=False,
                       default=ItemType.MANUAL.value)
    source_type = Column(String(64), nullable=True)
    source_id = Column(Integer, nullable=True)
    category = Column(String(50), nullable=True)

    description = Column(String(300), nullable=False)

    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), default=0, nullable=False)
    discount_amount = Column(Numeric(12, 2), default=0, nullable=False)
    discount_percentage = Column(Numeric(5, 2), default=0, nullable=False)

    # computed by compute_line()
    gross_amount = Column(Numeric(12, 2), default=0, nullable=False)
    line_discount = Column(Numeric(12, 2), default=0, nullable=False)
    net_amount = Column(Numeric(12, 2), default=0, nullable=False)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    bill = relationship("Bill", back_populates="items")


class Payment(Base):
    """
    Money received against a bill.
    Immutable once created, except status (pending -> completed | failed,
    completed -> voided) and the void stamps.
    """

    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_bill", "bill_id"), )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(
        Integer,
        ForeignKey("bills.id", ondelete="CASCADE"),
        nullable=False,
    )

    method = Column(String(32), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(DateTime, default=datetime.utcnow, nullable=False)

    # cash only; change_due is informational
    amount_tendered = Column(Numeric(12, 2), nullable=True)
    change_due = Column(Numeric(12, 2), default=0, nullable=False)

    transaction_id = Column(String(255), nullable=True)
    reference_number = Column(String(255), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    card_type = Column(String(20), nullable=True)
    bank_name = Column(String(255), nullable=True)
    check_number = Column(String(255), nullable=True)
    insurance_claim_id = Column(Integer,
                                ForeignKey("insurance_claims.id"),
                                nullable=True)

    status = Column(String(16),
                    nullable=False,
                    default=PaymentStatus.PENDING.value)
    notes = Column(String(1000), nullable=True)

    received_by = Column(Integer, nullable=True)
    voided_by = Column(Integer, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    void_reason = Column(String(1000), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    bill = relationship("Bill", back_populates="payments")
    refunds = relationship("BillRefund", back_populates="payment")


class BillRefund(Base):
    """
    Two-phase refund: requested -> approved | rejected, approved -> processed.
    Only processing touches the bill ledger.
    Targets exactly one of payment_id / bill_item_id.
    """

    __tablename__ = "bill_refunds"
    __table_args__ = (
        Index("ix_bill_refunds_bill", "bill_id"),
        Index("ix_bill_refunds_payment", "payment_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    reference_number = Column(String(32), unique=True, nullable=False)
    bill_id = Column(
        Integer,
        ForeignKey("bills.id", ondelete="CASCADE"),
        nullable=False,
    )
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    bill_item_id = Column(Integer,
                          ForeignKey("bill_items.id", ondelete="SET NULL"),
                          nullable=True)

    refund_amount = Column(Numeric(12, 2), nullable=False)
    refund_type = Column(String(10), nullable=False)
    refund_method = Column(String(32), nullable=False)
    refund_reason = Column(String(1000), nullable=False)

    status = Column(String(16),
                    nullable=False,
                    default=RefundStatus.REQUESTED.value)
    rejection_reason = Column(String(1000), nullable=True)
    notes = Column(Text, nullable=True)

    requested_by = Column(Integer, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    processed_by = Column(Integer, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    bill = relationship("Bill", back_populates="refunds")
    payment = relationship("Payment", back_populates="refunds")
    bill_item = relationship("BillItem")


class BillStatusHistory(Base):
    """
    Append-only audit trail: one row per status change or field edit.
    UPDATE / DELETE through the ORM is refused (see listeners below).
    """

    __tablename__ = "bill_status_history"
    __table_args__ = (Index("ix_bill_status_history_bill", "bill_id"), )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=False)

    # "status" for lifecycle moves, otherwise the edited field
    field_name = Column(String(50), nullable=False)
    status_from = Column(String(255), nullable=True)
    status_to = Column(String(255), nullable=True)
    changed_by = Column(Integer, nullable=True)
    reason = Column(String(1000), nullable=True)
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    bill = relationship("Bill", back_populates="status_history")


@event.listens_for(BillStatusHistory, "before_update")
def _history_no_update(mapper, connection, target):
    raise RuntimeError("bill_status_history is append-only")


@event.listens_for(BillStatusHistory, "before_delete")
def _history_no_delete(mapper, connection, target):
    raise RuntimeError("bill_status_history is append-only")


# ============================================================
# Insurance claims
# ============================================================
class InsuranceClaim(Base):
    __tablename__ = "insurance_claims"
    __table_args__ = (
        Index("ix_insurance_claims_bill", "bill_id"),
        Index("ix_insurance_claims_policy", "patient_insurance_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    claim_number = Column(String(32), unique=True, nullable=False)

    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=False)
    patient_insurance_id = Column(Integer,
                                  ForeignKey("patient_insurances.id"),
                                  nullable=False)

    claim_amount = Column(Numeric(12, 2), nullable=False)
    # NULL until decided
    approved_amount = Column(Numeric(12, 2), nullable=True)

    status = Column(String(20),
                    nullable=False,
                    default=ClaimStatus.DRAFT.value)

    submission_date = Column(DateTime, nullable=True)
    response_date = Column(DateTime, nullable=True)
    rejection_reason = Column(String(1000), nullable=True)
    notes = Column(Text, nullable=True)

    submitted_by = Column(Integer, nullable=True)
    processed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)

    bill = relationship("Bill", back_populates="claims")
    patient_insurance = relationship("PatientInsurance",
                                     back_populates="claims")

    @property
    def patient_responsibility(self) -> Decimal:
        return _q2(self.claim_amount) - _q2(self.approved_amount)

    @property
    def approval_rate(self) -> Optional[Decimal]:
        claim = _q2(self.claim_amount)
        if self.approved_amount is None or claim <= 0:
            return None
        return (_q2(self.approved_amount) / claim * Decimal("100")).quantize(
            Decimal("0.01"))


class PolicyUsage(Base):
    """
    Policy counters consumed by one approved claim.
    claim_id is UNIQUE: the idempotency key for deductible / annual usage.
    """

    __tablename__ = "insurance_policy_usage"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer,
                      ForeignKey("insurance_claims.id"),
                      nullable=False,
                      unique=True)
    patient_insurance_id = Column(Integer,
                                  ForeignKey("patient_insurances.id"),
                                  nullable=False)
    deductible_consumed = Column(Numeric(12, 2), default=0, nullable=False)
    coverage_consumed = Column(Numeric(12, 2), default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
