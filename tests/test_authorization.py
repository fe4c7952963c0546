"""Tests for the role matrix and the authorization gate."""

import uuid

import pytest

from hivehr.service.auth import AuthContext
from hivehr.service.authorization import (
    Action,
    AuthorizationGate,
    action_for_profile_update,
    permit,
)
from hivehr.service.errors import ForbiddenError
from hivehr.storage.models import Role


def _context(role: Role, user_id: str = None) -> AuthContext:
    return AuthContext(
        user_id=user_id or str(uuid.uuid4()),
        role=role,
        tenant_id=str(uuid.uuid4()),
        tenant_domain="acme",
        username="someone",
    )


class TestRoleMatrix:
    @pytest.mark.parametrize("action", list(Action))
    def test_admin_may_do_everything(self, action):
        assert permit(Role.ADMIN, action, is_self=True)

    @pytest.mark.parametrize(
        "action,expected",
        [
            (Action.VIEW_ANY_PROFILE, True),
            (Action.EDIT_ANY_PROFILE, True),
            (Action.MANAGE_ACCOUNTS, True),
            (Action.ASSIGN_ROLE, False),
        ],
    )
    def test_manager(self, action, expected):
        assert permit(Role.MANAGER, action, is_self=False) is expected

    @pytest.mark.parametrize(
        "action",
        [
            Action.VIEW_ANY_PROFILE,
            Action.EDIT_ANY_PROFILE,
            Action.MANAGE_ACCOUNTS,
            Action.ASSIGN_ROLE,
        ],
    )
    def test_employee_denied_privileged_actions(self, action):
        assert not permit(Role.EMPLOYEE, action, is_self=True)

    def test_own_actions_require_self(self):
        assert permit(Role.EMPLOYEE, Action.VIEW_OWN_PROFILE, is_self=True)
        assert permit(Role.EMPLOYEE, Action.EDIT_OWN_LIMITED, is_self=True)
        assert not permit(Role.EMPLOYEE, Action.VIEW_OWN_PROFILE, is_self=False)
        assert not permit(Role.EMPLOYEE, Action.EDIT_OWN_LIMITED, is_self=False)

    def test_unknown_role_denied(self):
        assert not permit("Contractor", Action.VIEW_OWN_PROFILE, is_self=True)


class TestProfileUpdateAction:
    def test_limited_fields_on_self(self):
        assert action_for_profile_update({"phone"}, is_self=True) == Action.EDIT_OWN_LIMITED
        assert (
            action_for_profile_update({"phone", "gender", "date_of_birth"}, is_self=True)
            == Action.EDIT_OWN_LIMITED
        )

    def test_other_fields_need_edit_any(self):
        assert action_for_profile_update({"position"}, is_self=True) == Action.EDIT_ANY_PROFILE
        assert action_for_profile_update({"phone", "department"}, is_self=True) == Action.EDIT_ANY_PROFILE

    def test_limited_fields_on_someone_else(self):
        assert action_for_profile_update({"phone"}, is_self=False) == Action.EDIT_ANY_PROFILE

    def test_role_change(self):
        assert action_for_profile_update({"role", "phone"}, is_self=True) == Action.ASSIGN_ROLE


class TestAuthorizationGate:
    def test_employee_editing_colleague_position_denied(self):
        gate = AuthorizationGate()
        ctx = _context(Role.EMPLOYEE)
        action = action_for_profile_update({"position"}, is_self=False)
        with pytest.raises(ForbiddenError) as exc_info:
            gate.require(ctx, action, target_user_id=str(uuid.uuid4()))
        assert exc_info.value.status_code == 403

    def test_employee_editing_own_phone_permitted(self):
        gate = AuthorizationGate()
        ctx = _context(Role.EMPLOYEE)
        action = action_for_profile_update({"phone"}, is_self=True)
        gate.require(ctx, action, target_user_id=ctx.user_id)

    def test_self_defaults_from_target(self):
        gate = AuthorizationGate()
        ctx = _context(Role.EMPLOYEE)
        assert gate.allows(ctx, Action.VIEW_OWN_PROFILE)
        assert gate.allows(ctx, Action.VIEW_OWN_PROFILE, ctx.user_id)
        assert not gate.allows(ctx, Action.VIEW_OWN_PROFILE, str(uuid.uuid4()))

    def test_explicit_is_self_wins(self):
        gate = AuthorizationGate()
        ctx = _context(Role.EMPLOYEE)
        assert not gate.allows(ctx, Action.EDIT_OWN_LIMITED, ctx.user_id, is_self=False)

    def test_manager_cannot_assign_roles(self):
        gate = AuthorizationGate()
        with pytest.raises(ForbiddenError):
            gate.require(_context(Role.MANAGER), Action.ASSIGN_ROLE, str(uuid.uuid4()))
