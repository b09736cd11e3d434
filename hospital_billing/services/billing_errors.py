# FILE: hospital_billing/services/billing_errors.py
from __future__ import annotations


# ============================================================
# Errors
# ============================================================
class BillingError(RuntimeError):
    status_code = 400


class ValidationError(BillingError):
    """Malformed line item / payment / claim input. Never auto-corrected."""
    status_code = 422


class NotFoundError(BillingError):
    status_code = 404


class BillNotFoundError(NotFoundError):
    pass


class BillLockedError(BillingError):
    """Mutation attempted on a paid or void bill."""
    status_code = 409


class BillStateError(BillingError):
    status_code = 409


class InvalidPaymentError(BillingError):
    status_code = 422


class ConcurrencyConflictError(BillingError):
    """Bill changed since it was loaded; reload and retry."""
    status_code = 409


class DuplicateBillingError(BillingError):
    """
    Source record already billed. Completion hooks treat this as a
    no-op success; `existing` is the line item already on file.
    """
    status_code = 200

    def __init__(self, msg: str, existing=None):
        super().__init__(msg)
        self.existing = existing
        # ids survive the rollback that follows
        self.bill_id = getattr(existing, "bill_id", None)
        self.bill_item_id = getattr(existing, "id", None)


class ClaimStateError(ValidationError):
    status_code = 409


class RefundStateError(ValidationError):
    status_code = 409
