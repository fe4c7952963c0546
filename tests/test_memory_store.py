"""Tests for the in-memory identity store and its persisted state."""

from datetime import datetime, timedelta

import pytest

from hivehr.storage.errors import ConstraintViolation
from hivehr.storage.memory import MemoryStore
from hivehr.storage.models import Role


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def acme(store):
    return store.create_tenant("Acme Inc", "acme")


def _user(store, tenant, email="jane@acme.com", username="jane", role=Role.ADMIN):
    return store.create_user(
        tenant_id=tenant.id,
        email=email,
        username=username,
        password_hash="$argon2id$fake",
        name="Jane",
        role=role,
    )


class TestTenants:
    def test_subdomain_unique_case_insensitively(self, store, acme):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_tenant("Other Acme", "ACME")
        assert exc_info.value.field == "subdomain"
        assert not store.is_subdomain_available("Acme")

    def test_delete_cascades(self, store, acme):
        user = _user(store, acme)
        store.create_employee(tenant_id=acme.id, name="Jane", email="jane@acme.com", user_id=user.id)
        store.create_reset_token(user.id, acme.id, "hash", 15)

        assert store.delete_tenant(acme.id)
        assert store.get_user(user.id) is None
        assert store.employees == {}
        assert store.reset_tokens == {}
        assert store.is_subdomain_available("acme")
        assert not store.delete_tenant(acme.id)


class TestUsers:
    def test_email_and_username_unique_per_tenant(self, store, acme):
        _user(store, acme)
        with pytest.raises(ConstraintViolation) as exc_info:
            _user(store, acme, email="JANE@acme.com", username="other")
        assert exc_info.value.field == "email"
        with pytest.raises(ConstraintViolation) as exc_info:
            _user(store, acme, email="other@acme.com", username="Jane")
        assert exc_info.value.field == "username"

    def test_same_identity_allowed_in_other_tenant(self, store, acme):
        globex = store.create_tenant("Globex", "globex")
        _user(store, acme)
        assert _user(store, globex).tenant_id == globex.id

    def test_unknown_tenant_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user(
                tenant_id="missing",
                email="a@b.co",
                username="abc",
                password_hash="x",
                name="A",
            )

    def test_tenant_scoped_lookup(self, store, acme):
        globex = store.create_tenant("Globex", "globex")
        user = _user(store, acme)
        assert store.get_user(user.id, acme.id) is not None
        assert store.get_user(user.id, globex.id) is None
        assert store.get_user_by_email("jane@acme.com", globex.id) is None

    def test_lockout_counter(self, store, acme):
        user = _user(store, acme)
        for _ in range(2):
            store.record_login_failure(user.id, acme.id, lock_threshold=3)
        assert not store.get_user(user.id).account_locked
        locked = store.record_login_failure(user.id, acme.id, lock_threshold=3)
        assert locked.account_locked
        assert locked.failed_attempts == 3

        assert store.set_password(user.id, acme.id, "$argon2id$new")
        reset = store.get_user(user.id)
        assert not reset.account_locked
        assert reset.failed_attempts == 0

    def test_delete_user_releases_employee(self, store, acme):
        user = _user(store, acme, role=Role.EMPLOYEE)
        profile = store.create_employee(
            tenant_id=acme.id, name="Jane", email="jane@acme.com", user_id=user.id
        )
        assert store.delete_user(user.id, acme.id)
        assert store.get_employee(profile.id, acme.id).user_id is None


class TestEmployees:
    def test_codes_are_sequential_per_tenant(self, store, acme):
        globex = store.create_tenant("Globex", "globex")
        first = store.create_employee(tenant_id=acme.id, name="A", email="a@acme.com")
        second = store.create_employee(tenant_id=acme.id, name="B", email="b@acme.com")
        other = store.create_employee(tenant_id=globex.id, name="C", email="c@globex.com")
        assert (first.employee_code, second.employee_code) == ("EMP-001", "EMP-002")
        assert other.employee_code == "EMP-001"
        assert store.get_employee_by_code("emp-002", acme.id).id == second.id

    def test_user_linked_once(self, store, acme):
        user = _user(store, acme)
        store.create_employee(tenant_id=acme.id, name="A", email="a@acme.com", user_id=user.id)
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_employee(tenant_id=acme.id, name="B", email="b@acme.com", user_id=user.id)
        assert exc_info.value.field == "user_id"

    def test_manager_must_be_in_same_tenant(self, store, acme):
        globex = store.create_tenant("Globex", "globex")
        outsider = store.create_employee(tenant_id=globex.id, name="X", email="x@globex.com")
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_employee(
                tenant_id=acme.id, name="A", email="a@acme.com", manager_id=outsider.id
            )
        assert exc_info.value.field == "manager_id"

    def test_update_and_direct_reports(self, store, acme):
        boss = store.create_employee(tenant_id=acme.id, name="Boss", email="boss@acme.com")
        report = store.create_employee(tenant_id=acme.id, name="R", email="r@acme.com")
        updated = store.update_employee(
            report.id, acme.id, {"manager_id": boss.id, "position": "Engineer"}
        )
        assert updated.position == "Engineer"
        assert [e.id for e in store.list_direct_reports(boss.id, acme.id)] == [report.id]

        with pytest.raises(ConstraintViolation):
            store.update_employee(report.id, acme.id, {"manager_id": report.id})
        with pytest.raises(ValueError):
            store.update_employee(report.id, acme.id, {"tenant_id": "other"})

    def test_delete_manager_clears_reports(self, store, acme):
        boss = store.create_employee(tenant_id=acme.id, name="Boss", email="boss@acme.com")
        report = store.create_employee(
            tenant_id=acme.id, name="R", email="r@acme.com", manager_id=boss.id
        )
        assert store.delete_employee(boss.id, acme.id)
        assert store.get_employee(report.id, acme.id).manager_id is None


class TestResetTokens:
    def test_consumed_once(self, store, acme):
        user = _user(store, acme)
        store.create_reset_token(user.id, acme.id, "digest", 15)
        assert store.consume_reset_token("digest") is not None
        assert store.consume_reset_token("digest") is None

    def test_expired_token(self, store, acme):
        user = _user(store, acme)
        store.create_reset_token(user.id, acme.id, "digest", 15)
        later = datetime.utcnow() + timedelta(minutes=16)
        assert store.consume_reset_token("digest", now=later) is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        root = str(tmp_path / "persisted")
        store = MemoryStore(fs_root=root)
        tenant = store.create_tenant("Acme Inc", "acme")
        user = _user(store, tenant, role=Role.MANAGER)
        store.record_login_success(user.id, tenant.id)
        profile = store.create_employee(
            tenant_id=tenant.id, name="Jane", email="jane@acme.com", user_id=user.id
        )

        reloaded = MemoryStore(fs_root=root)
        restored = reloaded.get_user(user.id)
        assert restored.role == Role.MANAGER
        assert isinstance(restored.last_login, datetime)
        assert restored.employee_id == profile.id
        assert reloaded.get_tenant_by_subdomain("acme").id == tenant.id
        assert reloaded.get_employee_by_code("EMP-001", tenant.id).user_id == user.id
