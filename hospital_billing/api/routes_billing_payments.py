from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from hospital_billing.api.deps import atomic, current_context, get_db
from hospital_billing.api.routes_billing import bill_out
from hospital_billing.core.rbac import Perm, UserContext, require_permission
from hospital_billing.schemas.billing import (
    PaymentConfirmIn,
    PaymentFailIn,
    PaymentIn,
    PaymentOut,
    PaymentStatsOut,
    PaymentVoidIn,
    RefundApproveIn,
    RefundIn,
    RefundOut,
    RefundRejectIn,
)
from hospital_billing.services import billing_payments as pay_svc
from hospital_billing.services.billing_service import get_bill
from hospital_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing Payments"])


def _payment_with_bill(p) -> dict:
    return {
        "payment": PaymentOut.model_validate(p).model_dump(),
        "bill": bill_out(p.bill),
    }


# -------------------------
# Payments
# -------------------------
@router.get("/bills/{bill_id}/payments")
def list_payments(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    bill = get_bill(db, bill_id)
    return ok([PaymentOut.model_validate(p).model_dump() for p in bill.payments])


@router.get("/bills/{bill_id}/payment-stats")
def payment_stats(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    stats = pay_svc.payment_statistics(get_bill(db, bill_id))
    return ok(PaymentStatsOut(**stats).model_dump())


@router.post("/bills/{bill_id}/payments")
def record_payment(
        bill_id: int,
        payload: PaymentIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.RECORD_PAYMENTS)
    with atomic(db):
        p = pay_svc.apply_payment(db,
                                  bill_id,
                                  payload,
                                  user_id=ctx.user_id,
                                  confirm=payload.confirm,
                                  expected_version=payload.expected_version)
    return ok(_payment_with_bill(p), status_code=201)


@router.post("/payments/{payment_id}/confirm")
def confirm_payment(
        payment_id: int,
        payload: PaymentConfirmIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.RECORD_PAYMENTS)
    with atomic(db):
        p = pay_svc.confirm_payment(db,
                                    payment_id,
                                    user_id=ctx.user_id,
                                    transaction_id=payload.transaction_id)
    return ok(_payment_with_bill(p))


@router.post("/payments/{payment_id}/fail")
def fail_payment(
        payment_id: int,
        payload: PaymentFailIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.RECORD_PAYMENTS)
    with atomic(db):
        p = pay_svc.fail_payment(db,
                                 payment_id,
                                 reason=payload.reason,
                                 user_id=ctx.user_id)
    return ok(_payment_with_bill(p))


@router.post("/payments/{payment_id}/void")
def void_payment(
        payment_id: int,
        payload: PaymentVoidIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VOID_BILLS)
    with atomic(db):
        p = pay_svc.void_payment(db,
                                 payment_id,
                                 payload.reason,
                                 user_id=ctx.user_id,
                                 expected_version=payload.expected_version)
    return ok(_payment_with_bill(p))


# -------------------------
# Refunds
# -------------------------
@router.get("/bills/{bill_id}/refunds")
def list_refunds(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    bill = get_bill(db, bill_id)
    return ok([RefundOut.model_validate(r).model_dump() for r in bill.refunds])


@router.post("/bills/{bill_id}/refunds")
def request_refund(
        bill_id: int,
        payload: RefundIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.PROCESS_REFUNDS)
    with atomic(db):
        r = pay_svc.request_refund(db, bill_id, payload, user_id=ctx.user_id)
    return ok(RefundOut.model_validate(r).model_dump(), status_code=201)


@router.post("/refunds/{refund_id}/approve")
def approve_refund(
        refund_id: int,
        payload: RefundApproveIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.APPROVE_REFUNDS)
    with atomic(db):
        r = pay_svc.approve_refund(db,
                                   refund_id,
                                   user_id=ctx.user_id,
                                   notes=payload.notes)
    return ok(RefundOut.model_validate(r).model_dump())


@router.post("/refunds/{refund_id}/reject")
def reject_refund(
        refund_id: int,
        payload: RefundRejectIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.APPROVE_REFUNDS)
    with atomic(db):
        r = pay_svc.reject_refund(db,
                                  refund_id,
                                  payload.reason,
                                  user_id=ctx.user_id)
    return ok(RefundOut.model_validate(r).model_dump())


@router.post("/refunds/{refund_id}/process")
def process_refund(
        refund_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.PROCESS_REFUNDS)
    with atomic(db):
        r = pay_svc.process_refund(db, refund_id, user_id=ctx.user_id)
    return ok({
        "refund": RefundOut.model_validate(r).model_dump(),
        "bill": bill_out(r.bill),
    })
