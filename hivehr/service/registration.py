from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from hivehr.config import Settings
from hivehr.logging import get_logger, hash_identifier
from hivehr.service.auth import AuthenticationService, IdentityStore
from hivehr.service.errors import (
    ConflictError,
    DuplicateResourceError,
    StoreUnavailableError,
)
from hivehr.service.notifications import WELCOME, NotificationQueue
from hivehr.service.tenancy import RESERVED_SUBDOMAINS
from hivehr.service.validation import (
    SUBDOMAIN_PATTERN,
    derive_username,
    to_service_error,
    validate_email,
    validate_password_strength,
    validate_username,
)
from hivehr.storage.errors import ConstraintViolation, StoreUnavailable
from hivehr.storage.models import Role, SafeUser, Tenant

logger = get_logger(__name__)

STORE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again later."
DOMAIN_TAKEN_MESSAGE = "This domain is already taken"


class RegistrationInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    company_name: str = Field(alias="companyName")
    company_domain: str = Field(alias="companyDomain")
    admin_name: str = Field(alias="adminName")
    admin_email: str = Field(alias="adminEmail")
    admin_password: str = Field(alias="adminPassword")
    admin_username: Optional[str] = Field(default=None, alias="adminUsername")

    @field_validator("company_name", "admin_name")
    @classmethod
    def _require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("This field is required")
        return value

    @field_validator("company_domain")
    @classmethod
    def _validate_domain(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("This field is required")
        if not SUBDOMAIN_PATTERN.match(value):
            raise ValueError("Domain may only contain letters, numbers and hyphens")
        value = value.lower()
        if value in RESERVED_SUBDOMAINS:
            raise ValueError("This domain is reserved")
        return value

    @field_validator("admin_email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("admin_password")
    @classmethod
    def _validate_admin_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("admin_username")
    @classmethod
    def _validate_admin_username(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return validate_username(value)


@dataclass(frozen=True)
class RegistrationResult:
    tenant: Tenant
    admin_user: SafeUser
    login_url: str


class RegistrationOrchestrator:
    """Provisions a tenant and its first Admin.

    Tenant creation always completes before the admin is created. If the
    admin cannot be created the tenant is deleted again so the subdomain is
    released; the one exception is a duplicate admin email, where the
    tenant is kept.
    """

    def __init__(
        self,
        store: IdentityStore,
        auth: AuthenticationService,
        notifications: NotificationQueue,
        settings: Settings,
    ) -> None:
        self.store = store
        self.auth = auth
        self.notifications = notifications
        self.settings = settings

    async def register(
        self,
        company_name: str,
        company_domain: str,
        admin_name: str,
        admin_email: str,
        admin_password: str,
        admin_username: Optional[str] = None,
    ) -> RegistrationResult:
        data = self.validate(
            company_name=company_name,
            company_domain=company_domain,
            admin_name=admin_name,
            admin_email=admin_email,
            admin_password=admin_password,
            admin_username=admin_username,
        )
        await self._ensure_store_reachable()

        subdomain = data.company_domain
        if not self.store.is_subdomain_available(subdomain):
            logger.info("registration_domain_taken", subdomain=subdomain)
            raise DuplicateResourceError(DOMAIN_TAKEN_MESSAGE, path="companyDomain")
        try:
            tenant = self.store.create_tenant(data.company_name, subdomain)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            logger.info("registration_domain_taken", subdomain=subdomain, race=True)
            raise DuplicateResourceError(DOMAIN_TAKEN_MESSAGE, path="companyDomain") from exc
        except StoreUnavailable as exc:
            raise StoreUnavailableError(STORE_UNAVAILABLE_MESSAGE) from exc

        username = data.admin_username or derive_username(data.admin_email)
        try:
            password_hash = await self.auth.hash_password(data.admin_password)
            admin = self.store.create_user(
                tenant_id=tenant.id,
                email=data.admin_email,
                username=username,
                password_hash=password_hash,
                name=data.admin_name,
                role=Role.ADMIN,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                logger.warning(
                    "registration_admin_email_taken",
                    tenant_id=tenant.id,
                    email_hash=hash_identifier(data.admin_email),
                )
                raise DuplicateResourceError(
                    "An account with this email already exists", path="adminEmail"
                ) from exc
            self._rollback(tenant, reason=exc.message)
            if exc.field == "username":
                raise DuplicateResourceError(
                    "This username is already taken", path="adminUsername"
                ) from exc
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except StoreUnavailable as exc:
            self._rollback(tenant, reason=str(exc))
            raise StoreUnavailableError(STORE_UNAVAILABLE_MESSAGE) from exc
        except Exception as exc:
            self._rollback(tenant, reason=f"{type(exc).__name__}: {exc}")
            raise

        login_url = self.settings.tenant_url(tenant.subdomain, "/login")
        logger.info(
            "tenant_registered",
            tenant_id=tenant.id,
            subdomain=tenant.subdomain,
            admin_user_id=admin.id,
        )
        self.notifications.enqueue(
            WELCOME,
            admin.email,
            admin_name=admin.name,
            company_name=tenant.name,
            login_url=login_url,
        )
        return RegistrationResult(tenant=tenant, admin_user=admin.safe(), login_url=login_url)

    def validate(self, **fields: Optional[str]) -> RegistrationInput:
        try:
            return RegistrationInput(**fields)
        except PydanticValidationError as exc:
            raise to_service_error(exc, RegistrationInput) from exc

    async def _ensure_store_reachable(self) -> None:
        try:
            await asyncio.to_thread(self.store.verify_connection)
        except StoreUnavailable as exc:
            logger.error("registration_store_unreachable", error=str(exc))
            raise StoreUnavailableError(STORE_UNAVAILABLE_MESSAGE) from exc

    def _rollback(self, tenant: Tenant, *, reason: str) -> None:
        logger.warning("registration_rollback", tenant_id=tenant.id, reason=reason)
        try:
            self.store.delete_tenant(tenant.id)
        except Exception as exc:
            logger.error(
                "registration_rollback_failed",
                tenant_id=tenant.id,
                subdomain=tenant.subdomain,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.notifications.alert_operator(
                "Tenant rollback failed",
                f"Tenant {tenant.subdomain} ({tenant.id}) could not be removed after a "
                f"failed registration: {exc}. Manual cleanup is required.",
            )


__all__ = [
    "RegistrationInput",
    "RegistrationOrchestrator",
    "RegistrationResult",
]
