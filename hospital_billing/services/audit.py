# FILE: hospital_billing/services/audit.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from hospital_billing.models.audit import ActivityLog

logger = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_activity(
    db: Session,
    action: str,
    category: str,
    message: str,
    severity: str = "info",
    user_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Optional[ActivityLog]:
    """
    Fire-and-forget activity record.
    Runs inside a SAVEPOINT so a failed insert never poisons the caller's
    transaction; failures are logged and swallowed.
    """
    logger.log(_LEVELS.get(severity, logging.INFO), "[%s] %s: %s", category,
               action, message)
    try:
        with db.begin_nested():
            row = ActivityLog(
                user_id=user_id,
                action=action,
                category=category,
                message=message,
                severity=severity,
                meta=meta,
            )
            db.add(row)
        return row
    except Exception:
        logger.exception("Activity log write failed: %s / %s", category,
                         action)
        return None
