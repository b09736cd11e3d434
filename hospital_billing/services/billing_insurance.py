# FILE: hospital_billing/services/billing_insurance.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hospital_billing.models.billing import (
    Bill,
    BillStatus,
    ClaimStatus,
    InsuranceClaim,
    PatientInsurance,
    PolicyUsage,
)
from hospital_billing.services.audit import log_activity
from hospital_billing.services.billing_calc import field_of
from hospital_billing.services.billing_errors import (
    BillLockedError,
    ClaimStateError,
    NotFoundError,
    ValidationError,
)
from hospital_billing.services.billing_lifecycle import record_field_change
from hospital_billing.services.billing_math import D, ZERO, clamp0, money2, pct_of
from hospital_billing.services.billing_payments import refresh_ledger
from hospital_billing.services.billing_store import load_bill, save_bill
from hospital_billing.services.id_gen import next_claim_number, today_local

logger = logging.getLogger(__name__)


# ============================================================
# Apportionment (pure)
# ============================================================
@dataclass(frozen=True)
class Apportionment:
    insurer_share: Decimal
    patient_share: Decimal
    deductible_applied: Decimal
    co_pay_amount: Decimal
    remaining_annual_coverage: Optional[Decimal] = None


def apportion(total_amount, policy: Any = None) -> Apportionment:
    """
    Split a bill total between insurer and patient.

      after_deductible = max(0, total - remaining_deductible)
      co_pay           = after_deductible * co_pay_% / 100, or the fixed
                         co_pay_amount when no percentage is set
      insurer          = max(0, after_deductible - co_pay), capped at the
                         remaining annual coverage when the policy has one
      patient          = total - insurer

    Nothing on the policy is mutated here.
    """
    total = money2(total_amount)
    if policy is None:
        return Apportionment(
            insurer_share=ZERO,
            patient_share=total,
            deductible_applied=ZERO,
            co_pay_amount=ZERO,
        )

    remaining_ded = money2(
        clamp0(
            D(field_of(policy, "deductible_amount")) -
            D(field_of(policy, "deductible_met"))))
    after_ded = money2(clamp0(total - remaining_ded))
    ded_applied = money2(total - after_ded)

    co_pay_pct = D(field_of(policy, "co_pay_percentage"))
    if co_pay_pct > 0:
        co_pay = pct_of(after_ded, co_pay_pct)
    else:
        co_pay = money2(field_of(policy, "co_pay_amount"))
    if co_pay > after_ded:
        co_pay = after_ded

    insurer = money2(clamp0(after_ded - co_pay))

    remaining_cov = None
    annual_max = field_of(policy, "annual_max_coverage")
    if annual_max is not None:
        remaining_cov = money2(
            clamp0(D(annual_max) - D(field_of(policy, "annual_used_amount"))))
        if insurer > remaining_cov:
            insurer = remaining_cov

    return Apportionment(
        insurer_share=insurer,
        patient_share=money2(total - insurer),
        deductible_applied=ded_applied,
        co_pay_amount=co_pay,
        remaining_annual_coverage=remaining_cov,
    )


# ============================================================
# Policies
# ============================================================
POLICY_FIELDS = (
    "provider_name",
    "policy_number",
    "member_id",
    "co_pay_amount",
    "co_pay_percentage",
    "deductible_amount",
    "annual_max_coverage",
    "coverage_start_date",
    "coverage_end_date",
    "is_primary",
    "is_active",
)


def create_policy(db: Session,
                  patient_id: int,
                  data: Dict[str, Any],
                  user_id: Optional[int] = None) -> PatientInsurance:
    pct = D(data.get("co_pay_percentage"))
    if pct < 0 or pct > 100:
        raise ValidationError("Co-pay percentage must be between 0 and 100")
    for k in ("co_pay_amount", "deductible_amount", "annual_max_coverage"):
        if data.get(k) is not None and D(data.get(k)) < 0:
            raise ValidationError(f"{k} cannot be negative")
    start, end = data.get("coverage_start_date"), data.get("coverage_end_date")
    if start and end and end < start:
        raise ValidationError("Coverage end date is before start date")

    policy = PatientInsurance(patient_id=int(patient_id))
    for k in POLICY_FIELDS:
        if k in data and data[k] is not None:
            setattr(policy, k, data[k])
    db.add(policy)
    db.flush()

    log_activity(db,
                 "Insurance Policy Added",
                 "Insurance",
                 f"Policy {policy.policy_number} ({policy.provider_name}) "
                 f"added for patient {patient_id}",
                 user_id=user_id,
                 meta={"patient_insurance_id": policy.id})
    return policy


def get_policy(db: Session, insurance_id: int) -> PatientInsurance:
    policy = db.get(PatientInsurance, int(insurance_id))
    if not policy:
        raise NotFoundError(f"Insurance policy {insurance_id} not found")
    return policy


def list_policies(db: Session, patient_id: int) -> List[PatientInsurance]:
    return (db.query(PatientInsurance).filter(
        PatientInsurance.patient_id == int(patient_id)).order_by(
            PatientInsurance.is_primary.desc(),
            PatientInsurance.id.desc()).all())


def usable_policy(bill: Bill, policy: PatientInsurance,
                  on: Optional[date] = None) -> PatientInsurance:
    if int(policy.patient_id) != int(bill.patient_id):
        raise ValidationError(
            "Insurance policy does not belong to the bill's patient")
    if not policy.is_valid(on or today_local()):
        raise ValidationError("Insurance policy is not active or has expired")
    return policy


def refresh_coverage_estimate(bill: Bill) -> None:
    """Re-derive insurer / patient split after totals move."""
    policy = bill.primary_insurance
    if policy is not None and policy.is_valid(today_local()):
        share = apportion(bill.total_amount, policy)
        bill.insurance_claim_amount = share.insurer_share
        bill.patient_responsibility = share.patient_share
    else:
        bill.insurance_claim_amount = ZERO
        bill.patient_responsibility = money2(bill.total_amount)


def calculate_bill_coverage(
    db: Session,
    bill_id: int,
    insurance_id: int,
    user_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Tuple[Bill, Apportionment]:
    """
    Attach a policy to the bill and store the insurer / patient split.
    Policy counters only move on claim approval.
    """
    bill = load_bill(db, bill_id, expected_version=expected_version)
    if bill.status == BillStatus.VOID.value:
        raise BillLockedError(f"Bill {bill.bill_number} is void")

    policy = usable_policy(bill, get_policy(db, insurance_id))
    share = apportion(bill.total_amount, policy)

    for field, new in (
        ("primary_insurance_id", policy.id),
        ("insurance_claim_amount", share.insurer_share),
        ("patient_responsibility", share.patient_share),
    ):
        record_field_change(db,
                            bill,
                            field,
                            getattr(bill, field),
                            new,
                            changed_by=user_id,
                            reason="Insurance coverage calculated")
    bill.primary_insurance_id = policy.id
    bill.primary_insurance = policy
    bill.insurance_claim_amount = share.insurer_share
    bill.patient_responsibility = share.patient_share
    save_bill(db, bill)

    log_activity(
        db,
        "Insurance Coverage Calculated",
        "Insurance",
        f"Bill {bill.bill_number}: insurer {share.insurer_share}, "
        f"patient {share.patient_share} ({policy.provider_name})",
        user_id=user_id,
        meta={
            "bill_id": bill.id,
            "patient_insurance_id": policy.id,
            "deductible_applied": format(share.deductible_applied, "f"),
            "co_pay_amount": format(share.co_pay_amount, "f"),
        },
    )
    return bill, share


# ============================================================
# Claims
# ============================================================
CLAIM_TRANSITIONS: Dict[str, frozenset] = {
    ClaimStatus.DRAFT.value:
    frozenset({ClaimStatus.SUBMITTED.value}),
    ClaimStatus.SUBMITTED.value:
    frozenset({ClaimStatus.UNDER_REVIEW.value}),
    ClaimStatus.UNDER_REVIEW.value:
    frozenset({
        ClaimStatus.APPROVED.value,
        ClaimStatus.PARTIAL_APPROVED.value,
        ClaimStatus.REJECTED.value,
    }),
    ClaimStatus.REJECTED.value:
    frozenset({ClaimStatus.APPEALED.value}),
    ClaimStatus.PARTIAL_APPROVED.value:
    frozenset({ClaimStatus.APPEALED.value}),
    ClaimStatus.APPEALED.value:
    frozenset({ClaimStatus.UNDER_REVIEW.value}),
    ClaimStatus.APPROVED.value:
    frozenset(),
}


def get_claim(db: Session, claim_id: int) -> InsuranceClaim:
    claim = db.get(InsuranceClaim, int(claim_id))
    if not claim:
        raise NotFoundError(f"Insurance claim {claim_id} not found")
    return claim


def remaining_coverage(db: Session,
                       policy: PatientInsurance,
                       claim: Optional[InsuranceClaim] = None) -> Optional[Decimal]:
    """
    Annual coverage still open on the policy, None when uncapped.
    What the given claim already consumed counts as open again.
    """
    if policy.annual_max_coverage is None:
        return None
    used = D(policy.annual_used_amount)
    if claim is not None and claim.id is not None:
        usage = db.query(PolicyUsage).filter(
            PolicyUsage.claim_id == claim.id).first()
        if usage is not None:
            used -= D(usage.coverage_consumed)
    return money2(clamp0(D(policy.annual_max_coverage) - used))


def _move_claim(claim: InsuranceClaim, to: str) -> str:
    current = claim.status
    if to not in CLAIM_TRANSITIONS.get(current, frozenset()):
        raise ClaimStateError(
            f"Claim {claim.claim_number}: cannot move from {current} to {to}")
    claim.status = to
    return current


def create_claim(
    db: Session,
    bill_id: int,
    patient_insurance_id: Optional[int] = None,
    claim_amount=None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
) -> InsuranceClaim:
    bill = load_bill(db, bill_id)
    if bill.status == BillStatus.VOID.value:
        raise BillLockedError(f"Bill {bill.bill_number} is void")

    policy_id = patient_insurance_id or bill.primary_insurance_id
    if not policy_id:
        raise ValidationError("Bill has no insurance policy to claim against")
    policy = usable_policy(bill, get_policy(db, policy_id))

    if claim_amount is None:
        amount = apportion(bill.total_amount, policy).insurer_share
    else:
        amount = money2(claim_amount)
    if amount <= 0:
        raise ValidationError("Claim amount must be greater than zero")
    if amount > money2(bill.total_amount):
        raise ValidationError("Claim amount cannot exceed the bill total")
    remaining = remaining_coverage(db, policy)
    if remaining is not None and amount > remaining:
        raise ValidationError(
            f"Claim amount {amount} exceeds remaining annual coverage {remaining}")

    claim = InsuranceClaim(
        claim_number=next_claim_number(db),
        bill_id=bill.id,
        patient_insurance_id=policy.id,
        claim_amount=amount,
        status=ClaimStatus.DRAFT.value,
        notes=notes,
    )
    db.add(claim)
    db.flush()

    log_activity(db,
                 "Insurance Claim Created",
                 "Insurance",
                 f"Claim {claim.claim_number} for {amount} on bill "
                 f"{bill.bill_number}",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "claim_id": claim.id})
    return claim


def submit_claim(db: Session,
                 claim_id: int,
                 user_id: Optional[int] = None) -> InsuranceClaim:
    claim = get_claim(db, claim_id)
    _move_claim(claim, ClaimStatus.SUBMITTED.value)
    claim.submission_date = datetime.utcnow()
    claim.submitted_by = user_id
    db.flush()

    log_activity(db,
                 "Insurance Claim Submitted",
                 "Insurance",
                 f"Claim {claim.claim_number} submitted",
                 user_id=user_id,
                 meta={"claim_id": claim.id})
    return claim


def start_review(db: Session,
                 claim_id: int,
                 user_id: Optional[int] = None) -> InsuranceClaim:
    claim = get_claim(db, claim_id)
    _move_claim(claim, ClaimStatus.UNDER_REVIEW.value)
    claim.processed_by = user_id
    db.flush()
    return claim


def _consume_policy(db: Session, bill: Bill, claim: InsuranceClaim,
                    approved: Decimal) -> Decimal:
    """
    Move policy counters for this claim, once.
    Returns what was previously applied to the bill for the claim so the
    caller can post only the difference (re-approval after appeal).
    """
    policy = claim.patient_insurance
    usage = db.query(PolicyUsage).filter(
        PolicyUsage.claim_id == claim.id).first()

    if usage is None:
        share = apportion(bill.total_amount, policy)
        usage = PolicyUsage(
            claim_id=claim.id,
            patient_insurance_id=policy.id,
            deductible_consumed=share.deductible_applied,
            coverage_consumed=approved,
        )
        try:
            with db.begin_nested():
                db.add(usage)
        except IntegrityError as e:
            raise ClaimStateError(
                f"Claim {claim.claim_number} was approved concurrently") from e
        policy.deductible_met = money2(
            D(policy.deductible_met) + share.deductible_applied)
        policy.annual_used_amount = money2(
            D(policy.annual_used_amount) + approved)
        return ZERO

    previous = money2(usage.coverage_consumed)
    if previous != approved:
        policy.annual_used_amount = money2(
            clamp0(D(policy.annual_used_amount) + approved - previous))
        usage.coverage_consumed = approved
    return previous


def approve_claim(
    db: Session,
    claim_id: int,
    approved_amount,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> InsuranceClaim:
    claim = get_claim(db, claim_id)
    approved = money2(approved_amount)
    claim_amt = money2(claim.claim_amount)
    if approved <= 0 or approved > claim_amt:
        raise ValidationError(
            f"Approved amount must be greater than 0 and at most {claim_amt}")

    bill = load_bill(db, claim.bill_id)
    if bill.status == BillStatus.VOID.value:
        raise BillLockedError(f"Bill {bill.bill_number} is void")
    remaining = remaining_coverage(db, claim.patient_insurance, claim)
    if remaining is not None and approved > remaining:
        raise ValidationError(
            f"Approved amount {approved} exceeds remaining annual coverage {remaining}")

    to = (ClaimStatus.APPROVED.value
          if approved >= claim_amt else ClaimStatus.PARTIAL_APPROVED.value)
    _move_claim(claim, to)
    claim.approved_amount = approved
    claim.response_date = datetime.utcnow()
    claim.processed_by = user_id
    if notes:
        claim.notes = notes

    previous = _consume_policy(db, bill, claim, approved)

    old_ins = money2(bill.insurance_approved_amount)
    bill.insurance_approved_amount = money2(
        clamp0(old_ins + approved - previous))
    record_field_change(db,
                        bill,
                        "insurance_approved_amount",
                        old_ins,
                        bill.insurance_approved_amount,
                        changed_by=user_id,
                        reason=f"Claim {claim.claim_number} {to}",
                        metadata={"claim_id": claim.id})
    refresh_ledger(db,
                   bill,
                   user_id=user_id,
                   reason=f"Insurance claim {claim.claim_number} {to}")
    save_bill(db, bill)

    log_activity(db,
                 "Insurance Claim Approved",
                 "Insurance",
                 f"Claim {claim.claim_number} {to}: {approved} of {claim_amt}",
                 user_id=user_id,
                 meta={"bill_id": bill.id, "claim_id": claim.id})
    return claim


def reject_claim(db: Session,
                 claim_id: int,
                 reason: str,
                 user_id: Optional[int] = None) -> InsuranceClaim:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    claim = get_claim(db, claim_id)
    _move_claim(claim, ClaimStatus.REJECTED.value)
    claim.rejection_reason = reason
    claim.response_date = datetime.utcnow()
    claim.processed_by = user_id
    db.flush()

    log_activity(db,
                 "Insurance Claim Rejected",
                 "Insurance",
                 f"Claim {claim.claim_number} rejected: {reason}",
                 severity="warning",
                 user_id=user_id,
                 meta={"bill_id": claim.bill_id, "claim_id": claim.id})
    return claim


def appeal_claim(db: Session,
                 claim_id: int,
                 reason: str,
                 user_id: Optional[int] = None) -> InsuranceClaim:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("An appeal reason is required")
    claim = get_claim(db, claim_id)
    _move_claim(claim, ClaimStatus.APPEALED.value)
    claim.notes = "\n".join(x for x in (claim.notes, f"Appeal: {reason}") if x)
    db.flush()

    log_activity(db,
                 "Insurance Claim Appealed",
                 "Insurance",
                 f"Claim {claim.claim_number} appealed: {reason}",
                 user_id=user_id,
                 meta={"bill_id": claim.bill_id, "claim_id": claim.id})
    return claim


# ============================================================
# Statistics
# ============================================================
def claim_statistics(db: Session, patient_insurance_id: int) -> Dict[str, Any]:
    """
    Per-policy claim totals. approval_rate is the share of decided claims
    (approved, partial_approved, rejected) that were approved at all.
    """
    policy = get_policy(db, patient_insurance_id)
    claims = db.query(InsuranceClaim).filter(
        InsuranceClaim.patient_insurance_id == policy.id).all()

    approved_states = {
        ClaimStatus.APPROVED.value,
        ClaimStatus.PARTIAL_APPROVED.value,
    }
    approved = [c for c in claims if c.status in approved_states]
    decided = len(approved) + sum(
        1 for c in claims if c.status == ClaimStatus.REJECTED.value)

    by_status = {s.value: 0 for s in ClaimStatus}
    for c in claims:
        by_status[c.status] = by_status.get(c.status, 0) + 1

    return {
        "patient_insurance_id": policy.id,
        "total_claims": len(claims),
        "total_claimed": money2(sum((D(c.claim_amount) for c in claims), ZERO)),
        "total_approved": money2(
            sum((D(c.approved_amount) for c in approved), ZERO)),
        "approval_rate": (money2(D(len(approved)) * 100 / D(decided))
                          if decided else None),
        "by_status": by_status,
        "annual_used_amount": money2(policy.annual_used_amount),
        "remaining_annual_coverage": remaining_coverage(db, policy),
    }
