from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from hospital_billing.api.deps import atomic, current_context, get_db
from hospital_billing.core.rbac import Perm, UserContext, require_permission
from hospital_billing.models.billing import Bill
from hospital_billing.schemas.billing import (
    AlertOut,
    BillCreate,
    BillItemIn,
    BillItemOut,
    BillItemUpdate,
    BillOut,
    DiscountIn,
    HistoryOut,
    ReassignIn,
    TaxRateIn,
    VoidIn,
)
from hospital_billing.services import billing_service as svc
from hospital_billing.services.alerts import merge_alerts, overdue_bill_alerts
from hospital_billing.services.billing_lifecycle import effective_status
from hospital_billing.services.id_gen import today_local
from hospital_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing"])


def bill_out(bill: Bill) -> dict:
    out = BillOut.model_validate(bill)
    out.effective_status = effective_status(bill, today_local())
    return out.model_dump()


# -------------------------
# Bills
# -------------------------
@router.get("/bills")
def list_bills(
        patient_id: Optional[int] = Query(None),
        status: Optional[str] = Query(None),
        overdue: Optional[bool] = Query(None),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    rows = svc.list_bills(db,
                          patient_id=patient_id,
                          status=status,
                          overdue=overdue,
                          limit=limit,
                          offset=offset)
    return ok([bill_out(b) for b in rows])


@router.post("/bills")
def create_bill(
        payload: BillCreate,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.CREATE_BILLS)
    with atomic(db):
        bill = svc.create_bill(
            db,
            patient_id=payload.patient_id,
            doctor_id=payload.doctor_id,
            items=[i.model_dump() for i in payload.items],
            discount=payload.discount,
            discount_type=payload.discount_type,
            tax_rate=payload.tax_rate,
            due_date=payload.due_date,
            notes=payload.notes,
            primary_insurance_id=payload.primary_insurance_id,
            issue=payload.issue,
            user_id=ctx.user_id,
        )
    return ok(bill_out(bill), status_code=201)


@router.get("/bills/{bill_id}")
def get_bill(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    return ok(bill_out(svc.get_bill(db, bill_id)))


@router.post("/bills/{bill_id}/issue")
def issue_bill(
        bill_id: int,
        expected_version: Optional[int] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        bill = svc.issue_bill(db,
                              bill_id,
                              user_id=ctx.user_id,
                              expected_version=expected_version)
    return ok(bill_out(bill))


@router.post("/bills/{bill_id}/recalculate")
def recalculate_bill(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        bill = svc.recalculate(db, bill_id, user_id=ctx.user_id)
    return ok(bill_out(bill))


@router.post("/bills/{bill_id}/void")
def void_bill(
        bill_id: int,
        payload: VoidIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VOID_BILLS)
    with atomic(db):
        bill = svc.void_bill(db,
                             bill_id,
                             payload.reason,
                             user_id=ctx.user_id,
                             expected_version=payload.expected_version)
    return ok(bill_out(bill))


@router.get("/bills/{bill_id}/history")
def bill_history(
        bill_id: int,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    rows = svc.bill_history(db, bill_id)
    return ok([HistoryOut.model_validate(r).model_dump() for r in rows])


# -------------------------
# Items
# -------------------------
@router.post("/bills/{bill_id}/items")
def add_item(
        bill_id: int,
        payload: BillItemIn,
        expected_version: Optional[int] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        item = svc.add_item(db,
                            bill_id,
                            payload.model_dump(),
                            user_id=ctx.user_id,
                            expected_version=expected_version)
    return ok(BillItemOut.model_validate(item).model_dump(), status_code=201)


@router.patch("/bills/{bill_id}/items/{item_id}")
def update_item(
        bill_id: int,
        item_id: int,
        payload: BillItemUpdate,
        expected_version: Optional[int] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        item = svc.update_item(db,
                               bill_id,
                               item_id,
                               payload.model_dump(exclude_unset=True),
                               user_id=ctx.user_id,
                               expected_version=expected_version)
    return ok(BillItemOut.model_validate(item).model_dump())


@router.delete("/bills/{bill_id}/items/{item_id}")
def remove_item(
        bill_id: int,
        item_id: int,
        expected_version: Optional[int] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        bill = svc.remove_item(db,
                               bill_id,
                               item_id,
                               user_id=ctx.user_id,
                               expected_version=expected_version)
    return ok(bill_out(bill))


# -------------------------
# Discount / tax / assignment
# -------------------------
@router.post("/bills/{bill_id}/discount")
def apply_discount(
        bill_id: int,
        payload: DiscountIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        bill = svc.apply_discount(db,
                                  bill_id,
                                  payload.value,
                                  payload.discount_type,
                                  reason=payload.reason,
                                  user_id=ctx.user_id,
                                  expected_version=payload.expected_version)
    return ok(bill_out(bill))


@router.post("/bills/{bill_id}/tax")
def set_tax_rate(
        bill_id: int,
        payload: TaxRateIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        bill = svc.set_tax_rate(db,
                                bill_id,
                                payload.tax_rate,
                                user_id=ctx.user_id,
                                expected_version=payload.expected_version)
    return ok(bill_out(bill))


@router.post("/bills/{bill_id}/reassign")
def reassign_bill(
        bill_id: int,
        payload: ReassignIn,
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.EDIT_BILLS)
    with atomic(db):
        bill = svc.reassign(db,
                            bill_id,
                            patient_id=payload.patient_id,
                            doctor_id=payload.doctor_id,
                            user_id=ctx.user_id,
                            reason=payload.reason,
                            expected_version=payload.expected_version)
    return ok(bill_out(bill))


# -------------------------
# Alerts
# -------------------------
@router.get("/alerts/overdue")
def overdue_alerts(
        page: int = Query(1, ge=1),
        per_page: int = Query(20, ge=1, le=200),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLS)
    today = today_local()
    bills = svc.list_bills(db, overdue=True, today=today, limit=10000)
    views = merge_alerts(stored=[],
                         derived=overdue_bill_alerts(bills, today),
                         page=page,
                         per_page=per_page)
    return ok([AlertOut.model_validate(v).model_dump() for v in views])
