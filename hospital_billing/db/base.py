# hospital_billing/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing tables (bills, items, payments, claims, audit) inherit from this."""
    pass
