# hospital_billing/api/router.py
from fastapi import APIRouter
from hospital_billing.api import (
    routes_billing,
    routes_billing_payments,
    routes_billing_insurance,
    routes_billing_hooks,
    routes_billing_reports,
)

api_router = APIRouter()

api_router.include_router(routes_billing.router)
api_router.include_router(routes_billing_payments.router)
api_router.include_router(routes_billing_insurance.router)
api_router.include_router(routes_billing_hooks.router)
api_router.include_router(routes_billing_reports.router)
