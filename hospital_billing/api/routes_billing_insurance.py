from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from hospital_billing.api.deps import atomic, current_context, get_db
from hospital_billing.api.routes_billing import bill_out
from hospital_billing.core.rbac import Perm, UserContext, require_permission
from hospital_billing.schemas.billing import (
    ClaimApproveIn,
    ClaimCreate,
    ClaimOut,
    ClaimReasonIn,
    CoverageIn,
    CoverageOut,
    PolicyIn,
    PolicyOut,
)
from hospital_billing.services import billing_insurance as ins
from hospital_billing.services.billing_service import get_bill
from hospital_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing Insurance"])


def _claim(c) -> dict:
    return ClaimOut.model_validate(c).model_dump()


# -------------------------
# Policies
# -------------------------
@router.post("/policies")
def create_policy(
        payload: PolicyIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    data = payload.model_dump(exclude={"patient_id"})
    with atomic(db):
        policy = ins.create_policy(db,
                                   payload.patient_id,
                                   data,
                                   user_id=ctx.user_id)
    return ok(PolicyOut.model_validate(policy).model_dump(), status_code=201)


@router.get("/patients/{patient_id}/policies")
def list_policies(
        patient_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    rows = ins.list_policies(db, patient_id)
    return ok([PolicyOut.model_validate(p).model_dump() for p in rows])


@router.get("/policies/{insurance_id}/claim-stats")
def claim_stats(
        insurance_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    return ok(ins.claim_statistics(db, insurance_id))


@router.post("/bills/{bill_id}/coverage")
def calculate_coverage(
        bill_id: int,
        payload: CoverageIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        bill, share = ins.calculate_bill_coverage(
            db,
            bill_id,
            payload.insurance_id,
            user_id=ctx.user_id,
            expected_version=payload.expected_version)
    cov = CoverageOut(
        bill_id=bill.id,
        insurance_id=payload.insurance_id,
        insurer_share=share.insurer_share,
        patient_share=share.patient_share,
        deductible_applied=share.deductible_applied,
        co_pay_amount=share.co_pay_amount,
        remaining_annual_coverage=share.remaining_annual_coverage,
    )
    return ok({"coverage": cov.model_dump(), "bill": bill_out(bill)})


# -------------------------
# Claims
# -------------------------
@router.get("/bills/{bill_id}/claims")
def list_claims(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    bill = get_bill(db, bill_id)
    return ok([_claim(c) for c in bill.claims])


@router.post("/bills/{bill_id}/claims")
def create_claim(
        bill_id: int,
        payload: ClaimCreate,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        claim = ins.create_claim(
            db,
            bill_id,
            patient_insurance_id=payload.patient_insurance_id,
            claim_amount=payload.claim_amount,
            notes=payload.notes,
            user_id=ctx.user_id,
        )
    return ok(_claim(claim), status_code=201)


@router.post("/claims/{claim_id}/submit")
def submit_claim(
        claim_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        claim = ins.submit_claim(db, claim_id, user_id=ctx.user_id)
    return ok(_claim(claim))


@router.post("/claims/{claim_id}/review")
def review_claim(
        claim_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        claim = ins.start_review(db, claim_id, user_id=ctx.user_id)
    return ok(_claim(claim))


@router.post("/claims/{claim_id}/approve")
def approve_claim(
        claim_id: int,
        payload: ClaimApproveIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        claim = ins.approve_claim(db,
                                  claim_id,
                                  payload.approved_amount,
                                  user_id=ctx.user_id,
                                  notes=payload.notes)
    return ok({"claim": _claim(claim), "bill": bill_out(claim.bill)})


@router.post("/claims/{claim_id}/reject")
def reject_claim(
        claim_id: int,
        payload: ClaimReasonIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        claim = ins.reject_claim(db,
                                 claim_id,
                                 payload.reason,
                                 user_id=ctx.user_id)
    return ok(_claim(claim))


@router.post("/claims/{claim_id}/appeal")
def appeal_claim(
        claim_id: int,
        payload: ClaimReasonIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.MANAGE_INSURANCE_CLAIMS)
    with atomic(db):
        claim = ins.appeal_claim(db,
                                 claim_id,
                                 payload.reason,
                                 user_id=ctx.user_id)
    return ok(_claim(claim))
