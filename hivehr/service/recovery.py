from __future__ import annotations

import asyncio
import hashlib
import secrets
from typing import Optional
from urllib.parse import quote

from hivehr.config import Settings
from hivehr.logging import get_logger, hash_identifier
from hivehr.service.auth import AuthenticationService, IdentityStore
from hivehr.service.email import EmailService
from hivehr.service.errors import (
    InvalidLoginUrlError,
    NotificationDeliveryError,
    ValidationError,
)
from hivehr.service.tenancy import TenantResolver
from hivehr.service.validation import validate_email, validate_password_strength
from hivehr.storage.common import normalize_subdomain

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = (
    "If an account exists for {email} at {domain}.{root}, "
    "you will receive an email with reset instructions."
)
INVALID_TOKEN_MESSAGE = "invalid or expired token"
DELIVERY_FAILED_MESSAGE = "Could not send password reset email."


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class PasswordRecoveryFlow:
    """Reset-token issuance and redemption.

    ``request_reset`` answers with the same message whether or not the
    tenant or the account exists. Only the SHA-256 of a reset token is
    stored; the raw token exists in the emailed link alone.
    """

    def __init__(
        self,
        store: IdentityStore,
        resolver: TenantResolver,
        auth: AuthenticationService,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.auth = auth
        self.email = email
        self.settings = settings

    async def request_reset(self, email: str, tenant_domain: Optional[str]) -> dict:
        try:
            normalized_email = validate_email(email or "")
        except ValueError as exc:
            raise ValidationError.for_field("email", str(exc)) from exc
        domain = normalize_subdomain(tenant_domain or "")
        if not domain:
            raise ValidationError.for_field("companyDomain", "Company domain is required")

        response = {
            "message": RESET_REQUESTED_MESSAGE.format(
                email=normalized_email, domain=domain, root=self.settings.root_domain
            )
        }
        email_hash = hash_identifier(normalized_email)

        tenant = self.resolver.resolve_domain(domain)
        if tenant is None or not tenant.is_active:
            logger.info("password_reset_unknown_tenant", subdomain=domain, email_hash=email_hash)
            return response
        user = self.store.get_user_by_email(normalized_email, tenant.id)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_user", tenant_id=tenant.id, email_hash=email_hash)
            return response

        token = secrets.token_urlsafe(32)
        self.store.create_reset_token(
            user.id,
            tenant.id,
            hash_reset_token(token),
            self.settings.password_reset_ttl_minutes,
        )
        reset_url = self.settings.tenant_url(
            tenant.subdomain, f"/reset-password?token={quote(token)}"
        )
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            user.email,
            reset_url,
            company_name=tenant.name,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        if not sent:
            logger.error("password_reset_delivery_failed", tenant_id=tenant.id, user_id=user.id)
            raise NotificationDeliveryError(DELIVERY_FAILED_MESSAGE)
        logger.info("password_reset_requested", tenant_id=tenant.id, user_id=user.id)
        return response

    async def request_reset_for_host(self, host: Optional[str], email: str) -> dict:
        subdomain = self.resolver.extract_subdomain(host)
        if subdomain is None:
            raise InvalidLoginUrlError("Please reset your password from your company's URL")
        return await self.request_reset(email, subdomain)

    async def complete_reset(
        self, token: str, new_password: str, tenant_domain: Optional[str]
    ) -> None:
        try:
            validate_password_strength(new_password or "")
        except ValueError as exc:
            raise ValidationError.for_field("newPassword", str(exc)) from exc
        if not token:
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        tenant = self.resolver.resolve_domain(tenant_domain)
        if tenant is None or not tenant.is_active:
            raise ValidationError(INVALID_TOKEN_MESSAGE)

        record = self.store.consume_reset_token(hash_reset_token(token))
        if record is None:
            logger.warning("password_reset_invalid_token", tenant_id=tenant.id)
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        if record.tenant_id != tenant.id:
            logger.warning(
                "password_reset_tenant_mismatch",
                reset_tenant_id=record.tenant_id,
                host_tenant_id=tenant.id,
            )
            raise ValidationError(INVALID_TOKEN_MESSAGE)
        user = self.store.get_user(record.user_id, tenant.id)
        if user is None:
            raise ValidationError(INVALID_TOKEN_MESSAGE)

        password_hash = await self.auth.hash_password(new_password)
        self.store.set_password(user.id, tenant.id, password_hash)
        logger.info("password_reset_completed", tenant_id=tenant.id, user_id=user.id)

    async def complete_reset_for_host(
        self, host: Optional[str], token: str, new_password: str
    ) -> None:
        subdomain = self.resolver.extract_subdomain(host)
        if subdomain is None:
            raise InvalidLoginUrlError("Please reset your password from your company's URL")
        await self.complete_reset(token, new_password, subdomain)
