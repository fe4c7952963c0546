from __future__ import annotations

import asyncio
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hivehr.config import Settings
from hivehr.logging import get_logger, hash_identifier
from hivehr.service.errors import InvalidCredentialsError, InvalidLoginUrlError, TenantNotFoundError
from hivehr.service.session import IssuedSession, SessionCodec
from hivehr.service.tenancy import TenantResolver, is_local_host
from hivehr.storage.common import normalize_subdomain
from hivehr.storage.models import (
    EMPLOYEE_INACTIVE,
    EmployeeProfile,
    PasswordResetToken,
    Role,
    SafeUser,
    Tenant,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid login credentials"
INVALID_LOGIN_URL_MESSAGE = "Please sign in from your company's login URL"
TENANT_NOT_FOUND_MESSAGE = "Company not found"


class IdentityStore(Protocol):
    def verify_connection(self) -> None: ...

    def create_tenant(self, name: str, subdomain: str, *, status: str = ...) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]: ...

    def is_subdomain_available(self, subdomain: str) -> bool: ...

    def delete_tenant(self, tenant_id: str) -> bool: ...

    def create_user(
        self,
        *,
        tenant_id: Optional[str],
        email: str,
        username: str,
        password_hash: str,
        name: str,
        role: Role = ...,
        is_active: bool = ...,
        employee_id: Optional[str] = ...,
    ) -> User: ...

    def get_user(self, user_id: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str]) -> Optional[User]: ...

    def get_user_by_username(self, username: str, tenant_id: Optional[str]) -> Optional[User]: ...

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, tenant_id: str, role: Role) -> Optional[User]: ...

    def set_password(self, user_id: str, tenant_id: str, password_hash: str) -> bool: ...

    def record_login_success(self, user_id: str, tenant_id: str) -> Optional[User]: ...

    def record_login_failure(
        self, user_id: str, tenant_id: str, *, lock_threshold: int
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str, tenant_id: str) -> bool: ...

    def create_employee(self, *, tenant_id: str, name: str, email: str, **fields: Any) -> EmployeeProfile: ...

    def get_employee(self, employee_id: str, tenant_id: str) -> Optional[EmployeeProfile]: ...

    def get_employee_by_code(self, employee_code: str, tenant_id: str) -> Optional[EmployeeProfile]: ...

    def get_employee_by_user(self, user_id: str, tenant_id: str) -> Optional[EmployeeProfile]: ...

    def update_employee(
        self, employee_id: str, tenant_id: str, fields: Dict[str, Any]
    ) -> Optional[EmployeeProfile]: ...

    def list_direct_reports(self, manager_id: str, tenant_id: str) -> List[EmployeeProfile]: ...

    def delete_employee(self, employee_id: str, tenant_id: str) -> bool: ...

    def create_reset_token(
        self, user_id: str, tenant_id: str, token_hash: str, ttl_minutes: int
    ) -> PasswordResetToken: ...

    def consume_reset_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]: ...


@dataclass
class AuthContext:
    """Verified identity handed to everything downstream of the session check."""

    user_id: str
    role: Role
    tenant_id: str
    tenant_domain: str
    username: str
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class LoginResult:
    user: SafeUser
    session: IssuedSession


class AuthenticationService:
    """Credential checks, session issuance and per-request session binding."""

    def __init__(
        self,
        store: IdentityStore,
        resolver: TenantResolver,
        codec: SessionCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.codec = codec
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    async def login(
        self, tenant_domain: Optional[str], login_identifier: str, password: str
    ) -> LoginResult:
        tenant = self._tenant_for_login(tenant_domain)
        identifier = (login_identifier or "").strip()
        if not identifier or not password:
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        user = self._find_user(identifier, tenant.id)
        identifier_hash = hash_identifier(identifier)
        if user is None:
            self._reject("user_not_found", tenant, identifier_hash)
        if user.tenant_id != tenant.id:
            self._reject("tenant_mismatch", tenant, identifier_hash, user_id=user.id)
        if not user.is_active:
            self._reject("user_inactive", tenant, identifier_hash, user_id=user.id)
        if user.account_locked:
            self._reject("account_locked", tenant, identifier_hash, user_id=user.id)

        profile = self._profile_for(user)
        if profile is not None and profile.status == EMPLOYEE_INACTIVE:
            self._reject("employee_inactive", tenant, identifier_hash, user_id=user.id)
        if user.role == Role.EMPLOYEE and (profile is None or not profile.is_active):
            self._reject("employee_profile_missing", tenant, identifier_hash, user_id=user.id)

        if not await self.verify_password(user.password_hash, password):
            updated = self.store.record_login_failure(
                user.id, tenant.id, lock_threshold=self.settings.max_failed_logins
            )
            if updated is not None and updated.account_locked:
                self.logger.warning(
                    "account_locked_after_failures",
                    tenant_id=tenant.id,
                    user_id=user.id,
                    failed_attempts=updated.failed_attempts,
                )
            self._reject("bad_password", tenant, identifier_hash, user_id=user.id)

        user = self.store.record_login_success(user.id, tenant.id) or user
        issued = self.codec.issue(
            user_id=user.id,
            tenant_id=tenant.id,
            tenant_domain=tenant.subdomain,
            role=user.role,
            username=user.username,
        )
        self.logger.info(
            "login_succeeded", tenant_id=tenant.id, user_id=user.id, role=user.role.value
        )
        return LoginResult(user=user.safe(), session=issued)

    async def login_for_host(
        self, host: Optional[str], login_identifier: str, password: str
    ) -> LoginResult:
        return await self.login(
            self.resolver.extract_subdomain(host), login_identifier, password
        )

    async def authenticate(
        self, token: Optional[str], host: Optional[str]
    ) -> Optional[AuthContext]:
        """Resolve the caller for a request, or None when the session is unusable.

        The tenant named in the session must be the tenant that owns the
        request host; a cookie minted on one tenant is never honoured on
        another, whatever its role.
        """
        record = self.codec.validate(token)
        if record is None:
            return None
        tenant = self.resolver.resolve(host)
        if tenant is None or not tenant.is_active:
            self.logger.info("session_host_unresolved", session_tenant_id=record.tenant_id)
            return None
        if tenant.id != record.tenant_id:
            self.logger.warning(
                "session_tenant_mismatch",
                session_tenant_id=record.tenant_id,
                host_tenant_id=tenant.id,
                user_id=record.user_id,
            )
            return None
        user = self.store.get_user(record.user_id, tenant.id)
        if user is None or not user.is_active or user.account_locked:
            return None
        if user.role != record.role:
            self.logger.info("session_role_stale", user_id=user.id, tenant_id=tenant.id)
            return None
        return AuthContext(
            user_id=user.id,
            role=user.role,
            tenant_id=tenant.id,
            tenant_domain=tenant.subdomain,
            username=user.username,
            expires_at=record.expires_at,
        )

    def logout_redirect(self, token: Optional[str]) -> str:
        record = self.codec.peek(token)
        if record is None:
            return "/login"
        return self.settings.tenant_url(record.tenant_domain, "/login")

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def verify_password(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._verify_sync, password_hash, password)

    def _verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    @staticmethod
    def generate_temporary_password(length: int = 12) -> str:
        """Random password with at least one lower, upper, digit and symbol."""
        length = max(length, 8)
        symbols = "!@#$%^&*"
        pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, symbols]
        chars = [secrets.choice(pool) for pool in pools]
        alphabet = "".join(pools)
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)

    def _tenant_for_login(self, tenant_domain: Optional[str]) -> Tenant:
        domain = normalize_subdomain(tenant_domain or "")
        if not domain or domain == self.settings.root_domain or is_local_host(domain):
            raise InvalidLoginUrlError(INVALID_LOGIN_URL_MESSAGE)
        tenant = self.resolver.resolve_domain(domain)
        if tenant is None or not tenant.is_active:
            self.logger.info("login_tenant_not_found", subdomain=domain)
            raise TenantNotFoundError(TENANT_NOT_FOUND_MESSAGE)
        return tenant

    def _find_user(self, identifier: str, tenant_id: str) -> Optional[User]:
        if "@" in identifier:
            return self.store.get_user_by_email(identifier, tenant_id)
        user = self.store.get_user_by_username(identifier, tenant_id)
        if user is not None:
            return user
        profile = self.store.get_employee_by_code(identifier, tenant_id)
        if profile is None or profile.user_id is None:
            return None
        return self.store.get_user(profile.user_id, tenant_id)

    def _profile_for(self, user: User) -> Optional[EmployeeProfile]:
        if user.tenant_id is None:
            return None
        if user.employee_id:
            profile = self.store.get_employee(user.employee_id, user.tenant_id)
            if profile is not None:
                return profile
        return self.store.get_employee_by_user(user.id, user.tenant_id)

    def _reject(
        self,
        reason: str,
        tenant: Tenant,
        identifier_hash: str,
        user_id: Optional[str] = None,
    ):
        self.logger.warning(
            "login_rejected",
            reason=reason,
            tenant_id=tenant.id,
            identifier_hash=identifier_hash,
            user_id=user_id,
        )
        raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
