from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from fastapi import HTTPException, status


class Perm(str, Enum):
    VIEW_BILLS = "view-bills"
    CREATE_BILLS = "create-bills"
    EDIT_BILLS = "edit-bills"
    VOID_BILLS = "void-bills"
    RECORD_PAYMENTS = "record-payments"
    PROCESS_REFUNDS = "process-refunds"
    APPROVE_REFUNDS = "approve-refunds"
    MANAGE_INSURANCE_CLAIMS = "manage-insurance-claims"
    VIEW_BILLING_REPORTS = "view-billing-reports"


SUPER_ADMIN_ROLES = {"super-admin", "super_admin", "superadmin", "root"}

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "admin": frozenset(p.value for p in Perm),
    "billing-manager": frozenset(p.value for p in Perm),
    "cashier": frozenset({
        Perm.VIEW_BILLS.value,
        Perm.CREATE_BILLS.value,
        Perm.RECORD_PAYMENTS.value,
        Perm.PROCESS_REFUNDS.value,
    }),
    "billing-clerk": frozenset({
        Perm.VIEW_BILLS.value,
        Perm.CREATE_BILLS.value,
        Perm.EDIT_BILLS.value,
    }),
    "insurance-officer": frozenset({
        Perm.VIEW_BILLS.value,
        Perm.MANAGE_INSURANCE_CLAIMS.value,
    }),
    "doctor": frozenset({Perm.VIEW_BILLS.value}),
    "receptionist": frozenset({Perm.VIEW_BILLS.value,
                               Perm.CREATE_BILLS.value}),
}


def _code(x: Any) -> str:
    """
    Normalize permission code safely.
    Supports Enum, str, dict {"code": ...} and objects with .code
    """
    if x is None:
        return ""
    if isinstance(x, Enum):
        return str(x.value)
    if isinstance(x, str):
        return x.strip()
    if isinstance(x, dict) and "code" in x:
        return _code(x["code"])
    if hasattr(x, "code"):
        return _code(getattr(x, "code"))
    return str(x)


def _codes(items: Optional[Iterable[Any]]) -> FrozenSet[str]:
    return frozenset(c for c in (_code(x) for x in (items or [])) if c)


@dataclass(frozen=True)
class TemporaryGrant:
    permission: str
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    approved: bool = True
    revoked: bool = False

    def is_active(self, now: datetime) -> bool:
        if not self.approved or self.revoked:
            return False
        if self.starts_at and now < self.starts_at:
            return False
        if self.expires_at and now >= self.expires_at:
            return False
        return True


@dataclass(frozen=True)
class UserContext:
    """Per-request permission snapshot. Built once, never re-queried."""
    user_id: Optional[int]
    is_super_admin: bool = False
    permissions: FrozenSet[str] = frozenset()


def build_user_context(
    user_id: Optional[int],
    role_permissions: Optional[Iterable[Any]] = None,
    granted: Optional[Iterable[Any]] = None,
    revoked: Optional[Iterable[Any]] = None,
    temporary_grants: Optional[Iterable[TemporaryGrant]] = None,
    now: Optional[datetime] = None,
    is_super_admin: bool = False,
) -> UserContext:
    """
    effective = (role | granted) - revoked | active temporary grants
    """
    now = now or datetime.utcnow()
    perms = (_codes(role_permissions) | _codes(granted)) - _codes(revoked)
    temp = frozenset(
        _code(g.permission) for g in (temporary_grants or [])
        if g.is_active(now))
    return UserContext(
        user_id=user_id,
        is_super_admin=bool(is_super_admin),
        permissions=frozenset(perms | temp),
    )


def has_permission(ctx: Optional[UserContext], name: Any) -> bool:
    if ctx is None:
        return False
    if ctx.is_super_admin:
        return True
    want = _code(name)
    if not want:
        return False
    return want in ctx.permissions


def require_permission(ctx: Optional[UserContext],
                       name: Any,
                       *,
                       message: Optional[str] = None) -> None:
    """
    Raise 403 if the snapshot lacks the permission.
    """
    if has_permission(ctx, name):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=message or "You do not have permission to perform this action.",
    )
