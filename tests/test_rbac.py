"""Tests for permission snapshots."""

from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from hospital_billing.core.rbac import (
    Perm,
    TemporaryGrant,
    build_user_context,
    has_permission,
    require_permission,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


class TestBuildUserContext:
    """effective = (role | granted) - revoked | active temporary grants"""

    def test_role_permissions(self):
        ctx = build_user_context(1, role_permissions=["view-bills"])
        assert has_permission(ctx, "view-bills")
        assert not has_permission(ctx, Perm.VOID_BILLS)

    def test_granted_and_revoked(self):
        ctx = build_user_context(
            1,
            role_permissions=["view-bills", "record-payments"],
            granted=[{"code": "void-bills"}],
            revoked=["record-payments"],
        )
        assert has_permission(ctx, "void-bills")
        assert not has_permission(ctx, "record-payments")

    def test_active_temporary_grant_beats_revocation(self):
        grant = TemporaryGrant("approve-refunds",
                               starts_at=NOW - timedelta(hours=1),
                               expires_at=NOW + timedelta(hours=1))
        ctx = build_user_context(1,
                                 revoked=["approve-refunds"],
                                 temporary_grants=[grant],
                                 now=NOW)
        assert has_permission(ctx, Perm.APPROVE_REFUNDS)

    @pytest.mark.parametrize(
        "grant",
        [
            TemporaryGrant("approve-refunds", expires_at=NOW),
            TemporaryGrant("approve-refunds", starts_at=NOW + timedelta(minutes=1)),
            TemporaryGrant("approve-refunds", approved=False),
            TemporaryGrant("approve-refunds", revoked=True),
        ],
    )
    def test_inactive_temporary_grants_ignored(self, grant):
        ctx = build_user_context(1, temporary_grants=[grant], now=NOW)
        assert not has_permission(ctx, "approve-refunds")

    def test_super_admin_has_everything(self):
        ctx = build_user_context(1, is_super_admin=True)
        assert has_permission(ctx, "anything-at-all")

    def test_no_context(self):
        assert not has_permission(None, "view-bills")


class TestRequirePermission:
    """403 on a missing permission."""

    def test_raises_forbidden(self):
        ctx = build_user_context(1, role_permissions=["view-bills"])
        with pytest.raises(HTTPException) as exc:
            require_permission(ctx, Perm.VOID_BILLS)
        assert exc.value.status_code == 403

    def test_passes(self):
        ctx = build_user_context(1, role_permissions=["void-bills"])
        require_permission(ctx, Perm.VOID_BILLS)
