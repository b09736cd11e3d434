from __future__ import annotations

from fastapi import APIRouter, Depends

from hospital_billing.api.deps import current_context, get_event_bus
from hospital_billing.core.rbac import Perm, UserContext, require_permission
from hospital_billing.schemas.billing import (
    AppointmentCompletedIn,
    HookResultOut,
    LabResultCompletedIn,
)
from hospital_billing.services.billing_events import (
    AppointmentCompleted,
    BillingEventBus,
    LabResultCompleted,
)
from hospital_billing.utils.resp import ok

router = APIRouter(prefix="/billing/hooks", tags=["Billing Hooks"])


def _results(results) -> list:
    return [HookResultOut.model_validate(r).model_dump() for r in results]


@router.post("/appointment-completed")
def appointment_completed(
        payload: AppointmentCompletedIn,
        bus: BillingEventBus = Depends(get_event_bus),
        ctx: UserContext = Depends(current_context),
):
    """
    Called by the appointment module after its own commit.
    Always 200: billing failures are logged and audited, never surfaced.
    """
    require_permission(ctx, Perm.CREATE_BILLS)
    results = bus.publish(AppointmentCompleted(**payload.model_dump()))
    return ok(_results(results))


@router.post("/lab-result-completed")
def lab_result_completed(
        payload: LabResultCompletedIn,
        bus: BillingEventBus = Depends(get_event_bus),
        ctx: UserContext = Depends(current_context),
):
    require_permission(ctx, Perm.CREATE_BILLS)
    results = bus.publish(LabResultCompleted(**payload.model_dump()))
    return ok(_results(results))
