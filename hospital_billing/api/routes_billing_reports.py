from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from hospital_billing.api.deps import current_context, get_db
from hospital_billing.core.rbac import Perm, UserContext, require_permission
from hospital_billing.services import billing_reports as reports
from hospital_billing.utils.resp import ok

router = APIRouter(prefix="/billing/reports", tags=["Billing Reports"])


@router.get("/revenue")
def revenue(
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    """
    Billed vs. collected.

    Full URL: GET /api/billing/reports/revenue?date_from=YYYY-MM-DD&date_to=YYYY-MM-DD
    """
    require_permission(ctx, Perm.VIEW_BILLING_REPORTS)
    return ok(reports.revenue_report(db, date_from, date_to))


@router.get("/outstanding")
def outstanding(
        days_overdue: Optional[int] = Query(None, ge=0),
        min_amount: Optional[Decimal] = Query(None, ge=0),
        max_amount: Optional[Decimal] = Query(None, ge=0),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLING_REPORTS)
    return ok(
        reports.outstanding_report(db,
                                   days_overdue=days_overdue,
                                   min_amount=min_amount,
                                   max_amount=max_amount))


@router.get("/payment-methods")
def payment_methods(
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLING_REPORTS)
    return ok(reports.payment_method_report(db, date_from, date_to))


@router.get("/insurance-claims")
def insurance_claims(
        date_from: Optional[date] = Query(None),
        date_to: Optional[date] = Query(None),
        status: Optional[str] = Query(None),
        db: Session = Depends(get_db),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.VIEW_BILLING_REPORTS)
    return ok(
        reports.insurance_claim_report(db, date_from, date_to, status=status))
