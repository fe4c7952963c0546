"""Tests for the password recovery flow."""

import re
from datetime import datetime, timedelta

import pytest

from hivehr.service.auth import AuthenticationService
from hivehr.service.errors import (
    InvalidLoginUrlError,
    NotificationDeliveryError,
    ValidationError,
)
from hivehr.service.recovery import PasswordRecoveryFlow, hash_reset_token
from hivehr.service.session import SessionCodec
from hivehr.service.tenancy import TenantResolver
from hivehr.storage.models import Role

OLD_PASSWORD = "OldPassword1"
NEW_PASSWORD = "BrandNewPassword2"
TOKEN_PATTERN = re.compile(r"token=([A-Za-z0-9_\-]+)")


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthenticationService(
        memory_store, TenantResolver(memory_store, settings), SessionCodec(settings), settings
    )


def _flow(memory_store, settings, auth_service, outbox):
    return PasswordRecoveryFlow(
        memory_store, TenantResolver(memory_store, settings), auth_service, outbox, settings
    )


@pytest.fixture
def flow(memory_store, settings, auth_service, email_outbox):
    return _flow(memory_store, settings, auth_service, email_outbox)


@pytest.fixture
def acme_admin(memory_store, auth_service):
    tenant = memory_store.create_tenant("Acme Inc", "acme")
    user = memory_store.create_user(
        tenant_id=tenant.id,
        email="jane@acme.com",
        username="jane",
        password_hash=auth_service._pwd_hasher.hash(OLD_PASSWORD),
        name="Jane Doe",
        role=Role.ADMIN,
    )
    return tenant, user


def _emailed_token(outbox) -> str:
    match = TOKEN_PATTERN.search(outbox.sent[-1]["text"])
    assert match, "reset link missing from email"
    return match.group(1)


class TestRequestReset:
    async def test_same_message_for_known_and_unknown_accounts(
        self, flow, acme_admin, email_outbox
    ):
        known = await flow.request_reset("jane@acme.com", "acme")
        unknown = await flow.request_reset("ghost@acme.com", "acme")
        assert set(known) == set(unknown) == {"message"}
        assert known["message"].replace("jane", "ghost") == unknown["message"]
        assert "acme.example.com" in known["message"]
        assert len(email_outbox.sent) == 1

    async def test_unknown_tenant_still_answers(self, flow, email_outbox):
        response = await flow.request_reset("jane@acme.com", "initech")
        assert "initech.example.com" in response["message"]
        assert email_outbox.sent == []

    async def test_token_stored_hashed_and_emailed(self, flow, memory_store, acme_admin, email_outbox):
        tenant, user = acme_admin
        await flow.request_reset("Jane@Acme.com", "acme")

        sent = email_outbox.sent[0]
        assert sent["to"] == "jane@acme.com"
        assert "https://acme.example.com/reset-password?token=" in sent["text"]
        token = _emailed_token(email_outbox)
        stored = list(memory_store.reset_tokens.values())
        assert len(stored) == 1
        assert stored[0].token_hash == hash_reset_token(token)
        assert stored[0].token_hash != token
        assert stored[0].tenant_id == tenant.id
        ttl = stored[0].expires_at - stored[0].created_at
        assert ttl == timedelta(minutes=15)

    @pytest.mark.parametrize(
        "email,domain,path",
        [("not-an-email", "acme", "email"), ("jane@acme.com", "", "companyDomain")],
    )
    async def test_invalid_input(self, flow, email, domain, path):
        with pytest.raises(ValidationError) as exc_info:
            await flow.request_reset(email, domain)
        assert exc_info.value.detail["errors"][0]["path"] == [path]

    async def test_delivery_failure_is_reported(
        self, memory_store, settings, auth_service, acme_admin, failing_outbox
    ):
        flow = _flow(memory_store, settings, auth_service, failing_outbox)
        with pytest.raises(NotificationDeliveryError) as exc_info:
            await flow.request_reset("jane@acme.com", "acme")
        assert exc_info.value.message == "Could not send password reset email."

    async def test_host_without_subdomain(self, flow):
        with pytest.raises(InvalidLoginUrlError):
            await flow.request_reset_for_host("example.com", "jane@acme.com")

    async def test_host_with_subdomain(self, flow, acme_admin, email_outbox):
        await flow.request_reset_for_host("acme.example.com", "jane@acme.com")
        assert len(email_outbox.sent) == 1


class TestCompleteReset:
    async def test_reset_changes_password(self, flow, auth_service, acme_admin, email_outbox):
        await flow.request_reset("jane@acme.com", "acme")
        await flow.complete_reset(_emailed_token(email_outbox), NEW_PASSWORD, "acme")

        result = await auth_service.login("acme", "jane", NEW_PASSWORD)
        assert result.user.email == "jane@acme.com"

    async def test_token_is_single_use(self, flow, acme_admin, email_outbox):
        await flow.request_reset("jane@acme.com", "acme")
        token = _emailed_token(email_outbox)
        await flow.complete_reset(token, NEW_PASSWORD, "acme")
        with pytest.raises(ValidationError) as exc_info:
            await flow.complete_reset(token, "AnotherPassword3", "acme")
        assert exc_info.value.message == "invalid or expired token"

    async def test_token_bound_to_tenant(self, flow, memory_store, acme_admin, email_outbox):
        memory_store.create_tenant("Globex", "globex")
        await flow.request_reset("jane@acme.com", "acme")
        token = _emailed_token(email_outbox)
        with pytest.raises(ValidationError):
            await flow.complete_reset(token, NEW_PASSWORD, "globex")

    async def test_expired_token(self, flow, memory_store, acme_admin, email_outbox):
        await flow.request_reset("jane@acme.com", "acme")
        token = _emailed_token(email_outbox)
        for record in memory_store.reset_tokens.values():
            record.expires_at = datetime.utcnow() - timedelta(seconds=1)
        with pytest.raises(ValidationError):
            await flow.complete_reset(token, NEW_PASSWORD, "acme")

    async def test_unknown_token(self, flow, acme_admin):
        with pytest.raises(ValidationError):
            await flow.complete_reset("made-up-token", NEW_PASSWORD, "acme")

    async def test_weak_password_rejected_before_token_is_used(
        self, flow, memory_store, acme_admin, email_outbox
    ):
        await flow.request_reset("jane@acme.com", "acme")
        token = _emailed_token(email_outbox)
        with pytest.raises(ValidationError) as exc_info:
            await flow.complete_reset(token, "short", "acme")
        assert exc_info.value.detail["errors"][0]["path"] == ["newPassword"]
        # the token is still redeemable
        await flow.complete_reset(token, NEW_PASSWORD, "acme")

    async def test_reset_unlocks_account(
        self, flow, memory_store, auth_service, acme_admin, email_outbox, settings
    ):
        tenant, user = acme_admin
        for _ in range(settings.max_failed_logins):
            memory_store.record_login_failure(
                user.id, tenant.id, lock_threshold=settings.max_failed_logins
            )
        assert memory_store.get_user(user.id).account_locked

        await flow.request_reset("jane@acme.com", "acme")
        await flow.complete_reset_for_host(
            "acme.example.com", _emailed_token(email_outbox), NEW_PASSWORD
        )
        unlocked = memory_store.get_user(user.id)
        assert not unlocked.account_locked
        assert unlocked.failed_attempts == 0
