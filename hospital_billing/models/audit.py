from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Index,
)

from hospital_billing.db.base import Base


class ActivityLog(Base):
    """
    Billing activity trail written by services.audit.log_activity().
    Every bill creation, billed item, payment, refund and void lands here.
    """
    __tablename__ = "activity_logs"
    __table_args__ = (Index("ix_activity_logs_category", "category",
                            "created_at"), )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True)  # system jobs / hooks may be null
    action = Column(String(100), nullable=False)  # "Payment Processed" ...
    category = Column(String(50), nullable=False)  # Billing / Insurance ...
    message = Column(String(2000), nullable=False)
    severity = Column(String(10), nullable=False,
                      default="info")  # info | warning | error

    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
