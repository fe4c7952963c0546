import uuid
from contextlib import contextmanager
from datetime import datetime

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from hivehr.logging import get_logger
from hivehr.storage.common import field_for_constraint
from hivehr.storage.errors import ConstraintViolation, StoreUnavailable
from hivehr.storage.models import Role
from hivehr.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class RaisingPool:
    """Pool whose connections fail every statement with ``exc``."""

    def __init__(self, exc: Exception):
        self.exc = exc

    @contextmanager
    def connection(self):
        yield RaisingConnection(self.exc)


class RaisingConnection:
    def __init__(self, exc: Exception):
        self.exc = exc

    def execute(self, *args, **kwargs):
        raise self.exc


class TimeoutPool:
    @contextmanager
    def connection(self):
        raise PoolTimeout("couldn't get a connection after 10.00 sec")
        yield  # pragma: no cover


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.timeout_seconds = 1.0
    store.logger = get_logger(__name__)
    return store


def test_row_mappers_stringify_ids():
    tenant_id = uuid.uuid4()
    user_id = uuid.uuid4()
    now = datetime.utcnow()
    user = PostgresStore._row_to_user(
        {
            "user_id": user_id,
            "tenant_id": tenant_id,
            "employee_id": None,
            "email": "jane@acme.com",
            "username": "jane",
            "password_hash": "$argon2id$x",
            "name": "Jane",
            "role": "Manager",
            "is_active": True,
            "failed_attempts": 2,
            "account_locked": False,
            "last_login": now,
            "created_at": now,
            "updated_at": now,
        }
    )
    assert user.id == str(user_id)
    assert user.tenant_id == str(tenant_id)
    assert user.role == Role.MANAGER
    assert user.employee_id is None
    assert user.failed_attempts == 2

    tenant = PostgresStore._row_to_tenant(
        {"tenant_id": tenant_id, "name": "Acme Inc", "subdomain": "acme"}
    )
    assert tenant.id == str(tenant_id)
    assert tenant.is_active

    manager_id = uuid.uuid4()
    profile = PostgresStore._row_to_employee(
        {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "employee_code": "EMP-007",
            "name": "Jane",
            "email": "jane@acme.com",
            "user_id": user_id,
            "manager_id": manager_id,
            "status": "On Leave",
        }
    )
    assert profile.manager_id == str(manager_id)
    assert profile.user_id == str(user_id)
    assert profile.is_active


def test_unique_violation_maps_to_field():
    store = _store(
        RaisingPool(
            errors.UniqueViolation(
                'duplicate key value violates unique constraint "users_tenant_email_key"'
            )
        )
    )
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(
            tenant_id=str(uuid.uuid4()),
            email="jane@acme.com",
            username="jane",
            password_hash="x",
            name="Jane",
        )
    assert exc_info.value.field == "email"


def test_subdomain_violation():
    store = _store(
        RaisingPool(
            errors.UniqueViolation(
                'duplicate key value violates unique constraint "tenants_subdomain_key"'
            )
        )
    )
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_tenant("Acme Inc", "acme")
    assert exc_info.value.field == "subdomain"


def test_statement_timeout_is_unavailable():
    store = _store(RaisingPool(errors.QueryCanceled("canceling statement due to statement timeout")))
    with pytest.raises(StoreUnavailable):
        store.get_tenant_by_subdomain("acme")


def test_pool_timeout_is_unavailable():
    store = _store(TimeoutPool())
    with pytest.raises(StoreUnavailable):
        store.verify_connection()


def test_update_employee_rejects_unknown_columns():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.update_employee(str(uuid.uuid4()), str(uuid.uuid4()), {"tenant_id": "x"})


def test_update_employee_rejects_self_manager():
    store = _store(DummyPool())
    employee_id = str(uuid.uuid4())
    with pytest.raises(ConstraintViolation):
        store.update_employee(employee_id, str(uuid.uuid4()), {"manager_id": employee_id})


@pytest.mark.parametrize("bad_id", ["abc", "EMP-001", "1; DROP TABLE users"])
def test_malformed_ids_read_as_missing(bad_id):
    # The database would reject these with InvalidTextRepresentation
    store = _store(
        RaisingPool(errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    )
    tenant_id = str(uuid.uuid4())
    assert store.get_user(bad_id, tenant_id) is None
    assert store.get_employee(bad_id, tenant_id) is None
    assert store.get_tenant(bad_id) is None
    assert store.update_user_role(bad_id, tenant_id, Role.MANAGER) is None
    assert store.update_employee(bad_id, tenant_id, {"position": "Engineer"}) is None
    assert store.delete_user(bad_id, tenant_id) is False
    assert store.delete_employee(bad_id, tenant_id) is False
    assert store.list_direct_reports(bad_id, tenant_id) == []


def test_malformed_manager_id_is_constraint_violation():
    store = _store(
        RaisingPool(errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    )
    with pytest.raises(ConstraintViolation) as exc_info:
        store.update_employee(str(uuid.uuid4()), str(uuid.uuid4()), {"manager_id": "abc"})
    assert exc_info.value.field == "manager_id"


@pytest.mark.parametrize(
    "constraint,message,expected",
    [
        ("users_tenant_username_key", "", "username"),
        (None, 'violates unique constraint "employees_user_id_key"', "user_id"),
        ("something_else", "", None),
    ],
)
def test_field_for_constraint(constraint, message, expected):
    assert field_for_constraint(constraint, message) == expected
