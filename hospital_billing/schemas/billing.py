# FILE: hospital_billing/schemas/billing.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DiscountTypeLit = Literal["fixed", "percentage"]


# -------------------------
# Items
# -------------------------
class BillItemIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=300)
    item_type: str = "manual"
    category: Optional[str] = None
    source_type: Optional[str] = None
    source_id: Optional[int] = None

    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    discount_percentage: Decimal = Decimal("0")

    @model_validator(mode="after")
    def _source_pair(self):
        if (self.source_type is None) != (self.source_id is None):
            raise ValueError("source_type and source_id go together")
        return self


class BillItemUpdate(BaseModel):
    description: Optional[str] = Field(None, min_length=1, max_length=300)
    category: Optional[str] = None
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None


class BillItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    seq: int
    item_type: str
    source_type: Optional[str] = None
    source_id: Optional[int] = None
    category: Optional[str] = None
    description: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    gross_amount: Decimal
    line_discount: Decimal
    net_amount: Decimal


# -------------------------
# Bills
# -------------------------
class BillCreate(BaseModel):
    patient_id: int
    doctor_id: Optional[int] = None
    items: List[BillItemIn] = []
    discount: Decimal = Decimal("0")
    discount_type: DiscountTypeLit = "fixed"
    tax_rate: Optional[Decimal] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    primary_insurance_id: Optional[int] = None
    issue: bool = False


class DiscountIn(BaseModel):
    value: Decimal
    discount_type: DiscountTypeLit = "fixed"
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class TaxRateIn(BaseModel):
    tax_rate: Decimal
    expected_version: Optional[int] = None


class ReassignIn(BaseModel):
    patient_id: Optional[int] = None
    doctor_id: Optional[int] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class VoidIn(BaseModel):
    reason: str = Field(..., min_length=10, max_length=1000)
    expected_version: Optional[int] = None

    @field_validator("reason")
    def _not_blank(cls, v: str) -> str:
        if len(v.strip()) < 10:
            raise ValueError("Void reason must be at least 10 characters.")
        return v.strip()


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bill_number: str
    patient_id: int
    doctor_id: Optional[int] = None
    primary_insurance_id: Optional[int] = None
    bill_date: date
    due_date: Optional[date] = None

    status: str
    payment_status: str
    effective_status: Optional[str] = None

    discount_value: Decimal
    discount_type: str
    tax_rate: Decimal

    gross_total: Decimal
    line_discount_total: Decimal
    sub_total: Decimal
    bill_discount_amount: Decimal
    total_discount: Decimal
    total_tax: Decimal
    total_amount: Decimal

    amount_paid: Decimal
    insurance_claim_amount: Decimal
    insurance_approved_amount: Decimal
    patient_responsibility: Decimal
    balance_due: Decimal
    last_payment_date: Optional[datetime] = None

    notes: Optional[str] = None
    voided_at: Optional[datetime] = None
    voided_by: Optional[int] = None
    void_reason: Optional[str] = None

    version: int
    created_at: Optional[datetime] = None
    items: List[BillItemOut] = []


class HistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    field_name: str
    status_from: Optional[str] = None
    status_to: Optional[str] = None
    changed_by: Optional[int] = None
    reason: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    created_at: datetime


# -------------------------
# Payments
# -------------------------
class PaymentIn(BaseModel):
    method: str
    amount: Decimal
    amount_tendered: Optional[Decimal] = None
    transaction_id: Optional[str] = Field(None, max_length=255)
    reference_number: Optional[str] = Field(None, max_length=255)
    card_last_four: Optional[str] = None
    card_type: Optional[str] = None
    bank_name: Optional[str] = Field(None, max_length=255)
    check_number: Optional[str] = Field(None, max_length=255)
    insurance_claim_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=1000)
    payment_date: Optional[datetime] = None

    confirm: bool = True
    expected_version: Optional[int] = None

    @field_validator("method", "card_type")
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bill_id: int
    method: str
    amount: Decimal
    payment_date: datetime
    amount_tendered: Optional[Decimal] = None
    change_due: Decimal
    transaction_id: Optional[str] = None
    reference_number: Optional[str] = None
    card_last_four: Optional[str] = None
    card_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    insurance_claim_id: Optional[int] = None
    status: str
    notes: Optional[str] = None
    received_by: Optional[int] = None
    voided_by: Optional[int] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None


class PaymentConfirmIn(BaseModel):
    transaction_id: Optional[str] = None


class PaymentFailIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class PaymentVoidIn(BaseModel):
    reason: str = Field(..., min_length=10, max_length=1000)
    expected_version: Optional[int] = None


class PaymentStatsOut(BaseModel):
    payment_count: int
    total_paid: Decimal
    last_payment_date: Optional[datetime] = None
    methods: List[str] = []
    refunded_total: Decimal


# -------------------------
# Refunds
# -------------------------
class RefundIn(BaseModel):
    payment_id: Optional[int] = None
    bill_item_id: Optional[int] = None
    refund_amount: Decimal
    refund_method: Literal["cash", "card", "bank_transfer", "check"]
    refund_reason: str = Field(..., min_length=10, max_length=1000)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self):
        if (self.payment_id is None) == (self.bill_item_id is None):
            raise ValueError("Give exactly one of payment_id or bill_item_id")
        return self


class RefundRejectIn(BaseModel):
    reason: str = Field(..., min_length=10, max_length=1000)


class RefundApproveIn(BaseModel):
    notes: Optional[str] = None


class RefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reference_number: str
    bill_id: int
    payment_id: Optional[int] = None
    bill_item_id: Optional[int] = None
    refund_amount: Decimal
    refund_type: str
    refund_method: str
    refund_reason: str
    status: str
    rejection_reason: Optional[str] = None
    requested_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None


# -------------------------
# Insurance
# -------------------------
class PolicyIn(BaseModel):
    patient_id: int
    provider_name: str = Field(..., min_length=1, max_length=199)
    policy_number: str = Field(..., min_length=1, max_length=100)
    member_id: Optional[str] = None
    co_pay_amount: Decimal = Decimal("0")
    co_pay_percentage: Decimal = Decimal("0")
    deductible_amount: Decimal = Decimal("0")
    annual_max_coverage: Optional[Decimal] = None
    coverage_start_date: Optional[date] = None
    coverage_end_date: Optional[date] = None
    is_primary: bool = True
    is_active: bool = True


class PolicyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    provider_name: str
    policy_number: str
    member_id: Optional[str] = None
    co_pay_amount: Decimal
    co_pay_percentage: Decimal
    deductible_amount: Decimal
    deductible_met: Decimal
    annual_max_coverage: Optional[Decimal] = None
    annual_used_amount: Decimal
    remaining_deductible: Decimal
    remaining_annual_coverage: Optional[Decimal] = None
    coverage_start_date: Optional[date] = None
    coverage_end_date: Optional[date] = None
    is_primary: bool
    is_active: bool


class CoverageIn(BaseModel):
    insurance_id: int
    expected_version: Optional[int] = None


class CoverageOut(BaseModel):
    bill_id: int
    insurance_id: int
    insurer_share: Decimal
    patient_share: Decimal
    deductible_applied: Decimal
    co_pay_amount: Decimal
    remaining_annual_coverage: Optional[Decimal] = None


class ClaimCreate(BaseModel):
    patient_insurance_id: Optional[int] = None
    claim_amount: Optional[Decimal] = None
    notes: Optional[str] = None


class ClaimApproveIn(BaseModel):
    approved_amount: Decimal
    notes: Optional[str] = None


class ClaimReasonIn(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class ClaimOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_number: str
    bill_id: int
    patient_insurance_id: int
    claim_amount: Decimal
    approved_amount: Optional[Decimal] = None
    status: str
    submission_date: Optional[datetime] = None
    response_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    patient_responsibility: Decimal
    approval_rate: Optional[Decimal] = None


# -------------------------
# Completion hooks
# -------------------------
class AppointmentCompletedIn(BaseModel):
    appointment_id: int
    patient_id: int
    doctor_id: Optional[int] = None
    doctor_name: Optional[str] = None
    fee: Decimal = Decimal("0")
    discount_percentage: Decimal = Decimal("0")
    completed_at: Optional[datetime] = None


class LabResultCompletedIn(BaseModel):
    result_id: int
    patient_id: int
    test_name: str
    test_code: Optional[str] = None
    cost: Decimal = Decimal("0")
    completed_at: Optional[datetime] = None


class HookResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    outcome: str
    bill_id: Optional[int] = None
    bill_item_id: Optional[int] = None
    message: Optional[str] = None


# -------------------------
# Alerts
# -------------------------
class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    subject_id: Optional[int] = None
    message: str
    severity: str
    created_at: Optional[datetime] = None
    resolvable: bool
    resolved: bool = False
