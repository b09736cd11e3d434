# hospital_billing/models/__init__.py
from .audit import ActivityLog
from .billing import (
    Bill,
    BillItem,
    BillRefund,
    BillStatusHistory,
    InsuranceClaim,
    PatientInsurance,
    Payment,
    PolicyUsage,
)

__all__ = [
    "ActivityLog",
    "Bill",
    "BillItem",
    "BillRefund",
    "BillStatusHistory",
    "InsuranceClaim",
    "PatientInsurance",
    "Payment",
    "PolicyUsage",
]
