# hospital_billing/api/deps.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Set

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from hospital_billing.core.rbac import (
    ROLE_PERMISSIONS,
    SUPER_ADMIN_ROLES,
    UserContext,
    build_user_context,
)
from hospital_billing.db.session import get_db  # noqa: F401
from hospital_billing.services.billing_events import BillingEventBus, make_event_bus

_bus: Optional[BillingEventBus] = None


def _csv(value: Optional[str]) -> Set[str]:
    return {v.strip() for v in (value or "").split(",") if v.strip()}


# =========================================================
# USER CONTEXT (headers set by the auth gateway)
# =========================================================
def current_context(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_grants: Optional[str] = Header(None),
    x_user_revokes: Optional[str] = Header(None),
) -> UserContext:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")

    roles = {r.lower() for r in _csv(x_user_role)}
    role_perms: Set[str] = set()
    for r in roles:
        role_perms |= set(ROLE_PERMISSIONS.get(r, ()))

    return build_user_context(
        user_id,
        role_permissions=role_perms,
        granted=_csv(x_user_grants),
        revoked=_csv(x_user_revokes),
        is_super_admin=bool(roles & SUPER_ADMIN_ROLES),
    )


# =========================================================
# EVENT BUS
# =========================================================
def get_event_bus() -> BillingEventBus:
    global _bus
    if _bus is None:
        _bus = make_event_bus()
    return _bus


# =========================================================
# TRANSACTION
# =========================================================
@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error and re-raise."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
