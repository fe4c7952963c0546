from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from hivehr.config import Settings
from hivehr.logging import get_logger, hash_identifier
from hivehr.service.auth import AuthContext, AuthenticationService, IdentityStore
from hivehr.service.authorization import Action, AuthorizationGate, action_for_profile_update
from hivehr.service.errors import (
    DuplicateResourceError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from hivehr.service.notifications import ACCOUNT_CREATED, NotificationQueue
from hivehr.service.validation import derive_username, validate_email, validate_username
from hivehr.storage.errors import ConstraintViolation
from hivehr.storage.models import (
    EMPLOYEE_STATUSES,
    EMPLOYEE_UPDATABLE_FIELDS,
    EmployeeProfile,
    Role,
    SafeUser,
)

logger = get_logger(__name__)

USER_NOT_FOUND_MESSAGE = "User not found"
EMPLOYEE_NOT_FOUND_MESSAGE = "Employee not found"


@dataclass(frozen=True)
class AccountView:
    user: SafeUser
    employee: Optional[EmployeeProfile] = None


class AccountService:
    """Role-gated account and profile management inside one tenant."""

    def __init__(
        self,
        store: IdentityStore,
        auth: AuthenticationService,
        gate: AuthorizationGate,
        notifications: NotificationQueue,
        settings: Settings,
    ) -> None:
        self.store = store
        self.auth = auth
        self.gate = gate
        self.notifications = notifications
        self.settings = settings

    def me(self, ctx: AuthContext) -> AccountView:
        self.gate.require(ctx, Action.VIEW_OWN_PROFILE)
        user = self.store.get_user(ctx.user_id, ctx.tenant_id)
        if user is None:
            raise NotFoundError(USER_NOT_FOUND_MESSAGE)
        return AccountView(user=user.safe(), employee=self._own_profile(ctx))

    def list_users(self, ctx: AuthContext, limit: int = 100) -> List[SafeUser]:
        self.gate.require(ctx, Action.VIEW_ANY_PROFILE, is_self=False)
        return [user.safe() for user in self.store.list_users(ctx.tenant_id, limit=limit)]

    async def create_account(
        self,
        ctx: AuthContext,
        *,
        name: str,
        email: str,
        role: Role = Role.EMPLOYEE,
        username: Optional[str] = None,
        position: Optional[str] = None,
        department: Optional[str] = None,
        phone: Optional[str] = None,
        manager_id: Optional[str] = None,
    ) -> AccountView:
        self.gate.require(ctx, Action.MANAGE_ACCOUNTS, is_self=False)
        role = Role(role)
        if role != Role.EMPLOYEE:
            self.gate.require(ctx, Action.ASSIGN_ROLE, is_self=False)

        name = (name or "").strip()
        if not name:
            raise ValidationError.for_field("name", "This field is required")
        try:
            email = validate_email(email or "")
        except ValueError as exc:
            raise ValidationError.for_field("email", str(exc)) from exc
        try:
            username = validate_username(username) or derive_username(email)
        except ValueError as exc:
            raise ValidationError.for_field("username", str(exc)) from exc
        if manager_id is not None and self.store.get_employee(manager_id, ctx.tenant_id) is None:
            raise ValidationError.for_field("managerId", "Manager not found")

        temporary_password = self.auth.generate_temporary_password()
        password_hash = await self.auth.hash_password(temporary_password)
        try:
            user = self.store.create_user(
                tenant_id=ctx.tenant_id,
                email=email,
                username=username,
                password_hash=password_hash,
                name=name,
                role=role,
            )
        except ConstraintViolation as exc:
            path = exc.field if exc.field in {"email", "username"} else "email"
            raise DuplicateResourceError(f"This {path} is already in use", path=path) from exc

        try:
            profile = self.store.create_employee(
                tenant_id=ctx.tenant_id,
                name=name,
                email=email,
                user_id=user.id,
                manager_id=manager_id,
                phone=phone,
                position=position,
                department=department,
            )
        except ConstraintViolation as exc:
            # A user without a profile could never sign in as an Employee
            self.store.delete_user(user.id, ctx.tenant_id)
            raise ValidationError.for_field(exc.field or "managerId", exc.message) from exc

        tenant = self.store.get_tenant(ctx.tenant_id)
        self.notifications.enqueue(
            ACCOUNT_CREATED,
            user.email,
            name=user.name,
            company_name=tenant.name if tenant else ctx.tenant_domain,
            username=user.username,
            temporary_password=temporary_password,
            login_url=self.settings.tenant_url(ctx.tenant_domain, "/login"),
        )
        logger.info(
            "account_created",
            tenant_id=ctx.tenant_id,
            user_id=user.id,
            role=role.value,
            created_by=ctx.user_id,
            email_hash=hash_identifier(email),
        )
        created = self.store.get_user(user.id, ctx.tenant_id) or user
        return AccountView(user=created.safe(), employee=profile)

    def delete_account(self, ctx: AuthContext, user_id: str) -> None:
        self.gate.require(ctx, Action.MANAGE_ACCOUNTS, target_user_id=user_id, is_self=False)
        if user_id == ctx.user_id:
            raise ValidationError("You cannot delete your own account")
        target = self.store.get_user(user_id, ctx.tenant_id)
        if target is None:
            raise NotFoundError(USER_NOT_FOUND_MESSAGE)
        if target.role == Role.ADMIN and ctx.role != Role.ADMIN:
            raise ForbiddenError("Only admins can delete admin accounts")
        self.store.delete_user(user_id, ctx.tenant_id)
        logger.info(
            "account_deleted", tenant_id=ctx.tenant_id, user_id=user_id, deleted_by=ctx.user_id
        )

    def change_role(self, ctx: AuthContext, user_id: str, role: Role) -> SafeUser:
        self.gate.require(ctx, Action.ASSIGN_ROLE, target_user_id=user_id)
        if user_id == ctx.user_id:
            raise ValidationError("You cannot change your own role")
        updated = self.store.update_user_role(user_id, ctx.tenant_id, Role(role))
        if updated is None:
            raise NotFoundError(USER_NOT_FOUND_MESSAGE)
        logger.info(
            "role_changed",
            tenant_id=ctx.tenant_id,
            user_id=user_id,
            role=updated.role.value,
            changed_by=ctx.user_id,
        )
        return updated.safe()

    def get_profile(self, ctx: AuthContext, employee_id: str) -> EmployeeProfile:
        if self.gate.allows(ctx, Action.VIEW_ANY_PROFILE, is_self=False):
            profile = self.store.get_employee(employee_id, ctx.tenant_id)
            if profile is None:
                raise NotFoundError(EMPLOYEE_NOT_FOUND_MESSAGE)
            return profile
        own = self._own_profile(ctx)
        is_self = own is not None and own.id == employee_id
        self.gate.require(ctx, Action.VIEW_OWN_PROFILE, is_self=is_self)
        return own

    def update_profile(
        self, ctx: AuthContext, employee_id: str, fields: Dict[str, Any]
    ) -> EmployeeProfile:
        if not fields:
            raise ValidationError("No fields to update")
        unknown = set(fields) - EMPLOYEE_UPDATABLE_FIELDS - {"role"}
        if unknown:
            raise ValidationError(
                f"Unsupported fields: {', '.join(sorted(unknown))}",
                detail={"errors": [{"path": [name], "message": "Unsupported field"} for name in sorted(unknown)]},
            )
        own = self._own_profile(ctx)
        is_self = own is not None and own.id == employee_id
        action = action_for_profile_update(fields, is_self)
        self.gate.require(ctx, action, is_self=is_self)
        new_role = None
        if "role" in fields:
            try:
                new_role = Role(fields["role"])
            except ValueError as exc:
                raise ValidationError.for_field(
                    "role", "Role must be one of: Admin, Manager, Employee"
                ) from exc

        profile = self.store.get_employee(employee_id, ctx.tenant_id)
        if profile is None:
            raise NotFoundError(EMPLOYEE_NOT_FOUND_MESSAGE)

        updates = {key: value for key, value in fields.items() if key != "role"}
        if "status" in updates and updates["status"] not in EMPLOYEE_STATUSES:
            raise ValidationError.for_field(
                "status", f"Status must be one of: {', '.join(EMPLOYEE_STATUSES)}"
            )
        if "email" in updates:
            try:
                updates["email"] = validate_email(updates["email"] or "")
            except ValueError as exc:
                raise ValidationError.for_field("email", str(exc)) from exc

        manager_id = updates.get("manager_id")
        if manager_id is not None and (
            manager_id == employee_id
            or self.store.get_employee(manager_id, ctx.tenant_id) is None
        ):
            raise ValidationError.for_field("managerId", "Manager not found")
        if new_role is not None:
            if profile.user_id is None:
                raise ValidationError.for_field("role", "Employee has no user account")
            if profile.user_id == ctx.user_id:
                raise ValidationError("You cannot change your own role")

        # Nothing is written until every field has been checked
        if updates:
            try:
                updated = self.store.update_employee(employee_id, ctx.tenant_id, updates)
            except ConstraintViolation as exc:
                raise ValidationError.for_field("managerId", exc.message) from exc
            if updated is None:
                raise NotFoundError(EMPLOYEE_NOT_FOUND_MESSAGE)
            profile = updated
        if new_role is not None:
            self.change_role(ctx, profile.user_id, new_role)
        logger.info(
            "employee_updated",
            tenant_id=ctx.tenant_id,
            employee_id=employee_id,
            fields=sorted(fields),
            updated_by=ctx.user_id,
        )
        return profile

    def _own_profile(self, ctx: AuthContext) -> Optional[EmployeeProfile]:
        return self.store.get_employee_by_user(ctx.user_id, ctx.tenant_id)
