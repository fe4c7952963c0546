from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from hivehr.logging import get_logger
from hivehr.service.auth import AuthContext
from hivehr.service.errors import ForbiddenError
from hivehr.storage.models import Role

logger = get_logger(__name__)

FORBIDDEN_MESSAGE = "You do not have permission to perform this action"

# Profile fields every user may change on their own record
LIMITED_FIELDS = frozenset({"phone", "date_of_birth", "gender"})


class Action(str, Enum):
    VIEW_OWN_PROFILE = "view_own_profile"
    VIEW_ANY_PROFILE = "view_any_profile"
    EDIT_ANY_PROFILE = "edit_any_profile"
    EDIT_OWN_LIMITED = "edit_own_limited"
    MANAGE_ACCOUNTS = "manage_accounts"
    ASSIGN_ROLE = "assign_role"


_MATRIX = {
    Role.ADMIN: frozenset(Action),
    Role.MANAGER: frozenset(
        {
            Action.VIEW_OWN_PROFILE,
            Action.VIEW_ANY_PROFILE,
            Action.EDIT_ANY_PROFILE,
            Action.EDIT_OWN_LIMITED,
            Action.MANAGE_ACCOUNTS,
        }
    ),
    Role.EMPLOYEE: frozenset({Action.VIEW_OWN_PROFILE, Action.EDIT_OWN_LIMITED}),
}

# Actions that only make sense against the caller's own record
_SELF_ONLY = frozenset({Action.VIEW_OWN_PROFILE, Action.EDIT_OWN_LIMITED})


def permit(role: Role, action: Action, is_self: bool) -> bool:
    """Pure role-matrix decision."""
    try:
        allowed = _MATRIX[Role(role)]
    except ValueError:
        return False
    if action not in allowed:
        return False
    if action in _SELF_ONLY and not is_self:
        # Admins and managers reach other people's records via the *_ANY actions
        return False
    return True


def action_for_profile_update(fields: Iterable[str], is_self: bool) -> Action:
    requested = set(fields)
    if "role" in requested:
        return Action.ASSIGN_ROLE
    if is_self and requested and requested <= LIMITED_FIELDS:
        return Action.EDIT_OWN_LIMITED
    return Action.EDIT_ANY_PROFILE


def _is_self(context: AuthContext, target_user_id: Optional[str], is_self: Optional[bool]) -> bool:
    if is_self is not None:
        return is_self
    return target_user_id is None or target_user_id == context.user_id


class AuthorizationGate:
    """Raises ForbiddenError unless the caller's role permits the action.

    Callers check the gate before loading the target record, and load
    targets scoped to the caller's tenant only.
    """

    def require(
        self,
        context: AuthContext,
        action: Action,
        target_user_id: Optional[str] = None,
        *,
        is_self: Optional[bool] = None,
    ) -> None:
        if permit(context.role, action, _is_self(context, target_user_id, is_self)):
            return
        logger.warning(
            "authorization_denied",
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            role=Role(context.role).value,
            action=action.value,
            target_user_id=target_user_id,
        )
        raise ForbiddenError(FORBIDDEN_MESSAGE)

    def allows(
        self,
        context: AuthContext,
        action: Action,
        target_user_id: Optional[str] = None,
        *,
        is_self: Optional[bool] = None,
    ) -> bool:
        return permit(context.role, action, _is_self(context, target_user_id, is_self))
