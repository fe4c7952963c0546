"""Tests for company self-registration.

Tests for:
- Tenant and first admin provisioning
- Field validation paths
- Duplicate domain, email and username handling
- Rollback when the admin cannot be created
- Welcome notification queueing
"""

import pytest

from hivehr.service.auth import AuthenticationService
from hivehr.service.errors import (
    DuplicateResourceError,
    StoreUnavailableError,
    ValidationError,
)
from hivehr.service.notifications import NotificationQueue
from hivehr.service.registration import RegistrationOrchestrator
from hivehr.service.session import SessionCodec
from hivehr.service.tenancy import TenantResolver
from hivehr.storage.errors import ConstraintViolation, StoreUnavailable
from hivehr.storage.memory import MemoryStore
from hivehr.storage.models import Role

ACME = {
    "company_name": "Acme Inc",
    "company_domain": "acme",
    "admin_name": "Jane Doe",
    "admin_email": "jane@acme.com",
    "admin_password": "s3cretpass",
}


def _build(store, settings, email_outbox):
    auth = AuthenticationService(
        store, TenantResolver(store, settings), SessionCodec(settings), settings
    )
    notifications = NotificationQueue(email_outbox, settings)
    return RegistrationOrchestrator(store, auth, notifications, settings), notifications


@pytest.fixture
def orchestrator(memory_store, settings, email_outbox):
    return _build(memory_store, settings, email_outbox)[0]


class FlakyUserStore(MemoryStore):
    """MemoryStore whose create_user fails with a configurable exception."""

    def __init__(self, *args, user_error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_error = user_error

    def create_user(self, **kwargs):
        if self.user_error is not None:
            raise self.user_error
        return super().create_user(**kwargs)


class StaleAvailabilityStore(MemoryStore):
    """MemoryStore that always reports a subdomain as free, as a concurrent
    registration would see it just before the other one commits."""

    def is_subdomain_available(self, subdomain):
        return True


class TestRegister:
    async def test_acme_registration(self, orchestrator, memory_store):
        result = await orchestrator.register(**ACME)

        assert result.login_url == "https://acme.example.com/login"
        assert result.tenant.subdomain == "acme"
        assert result.admin_user.role == Role.ADMIN
        assert result.admin_user.tenant_id == result.tenant.id
        users = memory_store.list_users(result.tenant.id)
        assert len(users) == 1
        assert users[0].role == Role.ADMIN
        assert users[0].password_hash.startswith("$argon2id$")

    async def test_domain_is_lowercased(self, orchestrator, memory_store):
        result = await orchestrator.register(**{**ACME, "company_domain": "AcMe"})
        assert result.tenant.subdomain == "acme"
        assert memory_store.get_tenant_by_subdomain("acme") is not None

    async def test_username_derived_from_email(self, orchestrator):
        result = await orchestrator.register(**ACME)
        assert result.admin_user.username == "jane"

    async def test_explicit_username(self, orchestrator):
        result = await orchestrator.register(**ACME, admin_username="JaneAdmin")
        assert result.admin_user.username == "janeadmin"

    async def test_welcome_notification_queued(self, memory_store, settings, email_outbox):
        orchestrator, notifications = _build(memory_store, settings, email_outbox)
        await orchestrator.register(**ACME)

        assert notifications.pending == 1
        assert await notifications.process_pending() == 1
        assert email_outbox.sent[0]["to"] == "jane@acme.com"
        assert "https://acme.example.com/login" in email_outbox.sent[0]["text"]

    async def test_welcome_failure_does_not_fail_registration(
        self, memory_store, settings, failing_outbox
    ):
        orchestrator, notifications = _build(memory_store, settings, failing_outbox)
        result = await orchestrator.register(**ACME)

        assert memory_store.get_tenant(result.tenant.id) is not None
        assert await notifications.process_pending() == 0
        assert len(notifications.failed) == 1


class TestValidation:
    @pytest.mark.parametrize(
        "overrides,path",
        [
            ({"company_name": "  "}, "companyName"),
            ({"company_domain": ""}, "companyDomain"),
            ({"company_domain": "acme corp"}, "companyDomain"),
            ({"company_domain": "acme.io"}, "companyDomain"),
            ({"company_domain": "www"}, "companyDomain"),
            ({"admin_name": ""}, "adminName"),
            ({"admin_email": "not-an-email"}, "adminEmail"),
            ({"admin_password": "short"}, "adminPassword"),
            ({"admin_password": "x" * 129}, "adminPassword"),
        ],
    )
    async def test_invalid_field(self, orchestrator, memory_store, overrides, path):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.register(**{**ACME, **overrides})
        paths = [err["path"][0] for err in exc_info.value.detail["errors"]]
        assert path in paths
        assert memory_store.list_tenants() == []

    async def test_invalid_username(self, orchestrator):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.register(**ACME, admin_username="a!")
        assert exc_info.value.detail["errors"][0]["path"] == ["adminUsername"]

    def test_validate_only(self, orchestrator, memory_store):
        data = orchestrator.validate(**ACME)
        assert data.company_domain == "acme"
        assert memory_store.list_tenants() == []


class TestDuplicates:
    async def test_duplicate_domain(self, orchestrator, memory_store):
        await orchestrator.register(**ACME)
        with pytest.raises(DuplicateResourceError) as exc_info:
            await orchestrator.register(**{**ACME, "admin_email": "other@acme.com"})
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail == {"path": "companyDomain"}
        assert len(memory_store.list_tenants()) == 1

    async def test_duplicate_domain_case_insensitive(self, orchestrator):
        await orchestrator.register(**ACME)
        with pytest.raises(DuplicateResourceError):
            await orchestrator.register(**{**ACME, "company_domain": "ACME"})

    async def test_duplicate_email_keeps_tenant(self, tmp_path, settings, email_outbox):
        store = FlakyUserStore(
            fs_root=str(tmp_path / "flaky"),
            user_error=ConstraintViolation("email already exists", {"field": "email"}),
        )
        orchestrator, _ = _build(store, settings, email_outbox)
        with pytest.raises(DuplicateResourceError) as exc_info:
            await orchestrator.register(**ACME)
        assert exc_info.value.path == "adminEmail"
        assert store.get_tenant_by_subdomain("acme") is not None

    async def test_insert_conflict_after_stale_check(self, tmp_path, settings, email_outbox):
        store = StaleAvailabilityStore(fs_root=str(tmp_path / "stale"))
        orchestrator, _ = _build(store, settings, email_outbox)
        await orchestrator.register(**ACME)
        with pytest.raises(DuplicateResourceError) as exc_info:
            await orchestrator.register(**{**ACME, "admin_email": "other@acme.com"})
        assert exc_info.value.path == "companyDomain"
        assert len(store.list_tenants()) == 1
        assert len(store.list_users(store.list_tenants()[0].id)) == 1


class TestRollback:
    async def test_username_conflict_releases_subdomain(self, tmp_path, settings, email_outbox):
        store = FlakyUserStore(
            fs_root=str(tmp_path / "flaky"),
            user_error=ConstraintViolation("username already exists", {"field": "username"}),
        )
        orchestrator, _ = _build(store, settings, email_outbox)
        with pytest.raises(DuplicateResourceError) as exc_info:
            await orchestrator.register(**ACME)
        assert exc_info.value.path == "adminUsername"
        assert store.is_subdomain_available("acme")

    async def test_unexpected_error_releases_subdomain(self, tmp_path, settings, email_outbox):
        store = FlakyUserStore(fs_root=str(tmp_path / "flaky"), user_error=RuntimeError("boom"))
        orchestrator, _ = _build(store, settings, email_outbox)
        with pytest.raises(RuntimeError):
            await orchestrator.register(**ACME)
        assert store.is_subdomain_available("acme")

        # a retry with a healthy store succeeds
        store.user_error = None
        result = await orchestrator.register(**ACME)
        assert result.tenant.subdomain == "acme"

    async def test_store_outage_during_admin_creation(self, tmp_path, settings, email_outbox):
        store = FlakyUserStore(
            fs_root=str(tmp_path / "flaky"), user_error=StoreUnavailable("timeout")
        )
        orchestrator, _ = _build(store, settings, email_outbox)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await orchestrator.register(**ACME)
        assert exc_info.value.status_code == 503
        assert store.is_subdomain_available("acme")

    async def test_failed_rollback_alerts_operator(self, tmp_path, settings, email_outbox):
        class StickyTenantStore(FlakyUserStore):
            def delete_tenant(self, tenant_id):
                raise StoreUnavailable("connection lost")

        store = StickyTenantStore(fs_root=str(tmp_path / "sticky"), user_error=RuntimeError("boom"))
        alerting = settings.model_copy(update={"admin_email": "ops@example.com"})
        orchestrator, notifications = _build(store, alerting, email_outbox)
        with pytest.raises(RuntimeError):
            await orchestrator.register(**ACME)

        await notifications.process_pending()
        assert email_outbox.sent[0]["to"] == "ops@example.com"
        assert "acme" in email_outbox.sent[0]["text"]


class TestStoreReachability:
    async def test_unreachable_store(self, tmp_path, settings, email_outbox):
        class OfflineStore(MemoryStore):
            def verify_connection(self):
                raise StoreUnavailable("database unavailable", operation="verify_connection")

        store = OfflineStore(fs_root=str(tmp_path / "offline"))
        orchestrator, _ = _build(store, settings, email_outbox)
        with pytest.raises(StoreUnavailableError):
            await orchestrator.register(**ACME)
        assert store.list_tenants() == []
