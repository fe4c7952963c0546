from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hivehr.logging import get_logger
from hivehr.storage.common import (
    field_for_constraint,
    generate_uuid,
    is_uuid,
    next_employee_code,
    normalize_email,
    normalize_subdomain,
    normalize_username,
)
from hivehr.storage.errors import ConstraintViolation, StoreUnavailable
from hivehr.storage.models import (
    EMPLOYEE_ACTIVE,
    EMPLOYEE_UPDATABLE_FIELDS,
    TENANT_ACTIVE,
    EmployeeProfile,
    PasswordResetToken,
    Role,
    Tenant,
    User,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenants (
        tenant_id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        subdomain TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        CONSTRAINT tenants_subdomain_key UNIQUE (subdomain)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id UUID PRIMARY KEY,
        tenant_id UUID REFERENCES tenants (tenant_id) ON DELETE CASCADE,
        employee_id UUID,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'Employee',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMP,
        password_changed_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        CONSTRAINT users_tenant_email_key UNIQUE (tenant_id, email),
        CONSTRAINT users_tenant_username_key UNIQUE (tenant_id, username),
        CONSTRAINT users_role_check CHECK (role IN ('Admin', 'Manager', 'Employee'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS employees (
        id UUID PRIMARY KEY,
        tenant_id UUID NOT NULL REFERENCES tenants (tenant_id) ON DELETE CASCADE,
        employee_code TEXT NOT NULL,
        user_id UUID REFERENCES users (user_id) ON DELETE SET NULL,
        manager_id UUID REFERENCES employees (id) ON DELETE SET NULL,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        date_of_birth TEXT,
        gender TEXT,
        position TEXT,
        department TEXT,
        status TEXT NOT NULL DEFAULT 'Active',
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        CONSTRAINT employees_tenant_code_key UNIQUE (tenant_id, employee_code),
        CONSTRAINT employees_user_id_key UNIQUE (user_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS employees_manager_idx ON employees (tenant_id, manager_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (user_id) ON DELETE CASCADE,
        tenant_id UUID NOT NULL REFERENCES tenants (tenant_id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMP NOT NULL,
        used_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
    )
    """,
)


class PostgresStore:
    """Postgres-backed identity store.

    Every connection carries a connect timeout and a statement timeout so a
    slow database surfaces as ``StoreUnavailable`` instead of hanging a request.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 10.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            diag = getattr(exc, "diag", None)
            constraint = getattr(diag, "constraint_name", None) if diag else None
            field = field_for_constraint(constraint, str(exc))
            raise ConstraintViolation(
                f"{field or 'value'} already exists", {"field": field}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced record not found", {}) from exc
        except (PoolTimeout, errors.QueryCanceled, psycopg.OperationalError) as exc:
            self.logger.error(
                "store_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # tenants
    def create_tenant(
        self, name: str, subdomain: str, *, status: str = TENANT_ACTIVE
    ) -> Tenant:
        tenant = Tenant(
            id=generate_uuid(),
            name=name,
            subdomain=normalize_subdomain(subdomain),
            status=status,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tenants (tenant_id, name, subdomain, status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    tenant.id,
                    tenant.name,
                    tenant.subdomain,
                    tenant.status,
                    tenant.created_at,
                    tenant.updated_at,
                ),
            )
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        if not is_uuid(tenant_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE subdomain = %s",
                (normalize_subdomain(subdomain),),
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def is_subdomain_available(self, subdomain: str) -> bool:
        return self.get_tenant_by_subdomain(subdomain) is None

    def delete_tenant(self, tenant_id: str) -> bool:
        if not is_uuid(tenant_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM tenants WHERE tenant_id = %s", (tenant_id,))
            return result.rowcount > 0

    def list_tenants(self) -> List[Tenant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tenants ORDER BY created_at").fetchall()
        return [self._row_to_tenant(row) for row in rows]

    # users
    def create_user(
        self,
        *,
        tenant_id: Optional[str],
        email: str,
        username: str,
        password_hash: str,
        name: str,
        role: Role = Role.EMPLOYEE,
        is_active: bool = True,
        employee_id: Optional[str] = None,
    ) -> User:
        now = datetime.utcnow()
        user = User(
            id=generate_uuid(),
            tenant_id=tenant_id,
            email=normalize_email(email),
            username=normalize_username(username),
            password_hash=password_hash,
            name=name,
            role=Role(role),
            is_active=is_active,
            employee_id=employee_id,
            password_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (
                    user_id, tenant_id, employee_id, username, email, password_hash, name,
                    role, is_active, password_changed_at, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user.id,
                    user.tenant_id,
                    user.employee_id,
                    user.username,
                    user.email,
                    user.password_hash,
                    user.name,
                    user.role.value,
                    user.is_active,
                    now,
                    now,
                    now,
                ),
            )
        return user

    def get_user(self, user_id: str, tenant_id: Optional[str] = None) -> Optional[User]:
        if not is_uuid(user_id):
            return None
        query = "SELECT * FROM users WHERE user_id = %s"
        params: tuple = (user_id,)
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            params = (user_id, tenant_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: Optional[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s AND tenant_id IS NOT DISTINCT FROM %s",
                (normalize_email(email), tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(
        self, username: str, tenant_id: Optional[str]
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = %s AND tenant_id IS NOT DISTINCT FROM %s",
                (normalize_username(username), tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE tenant_id = %s ORDER BY created_at LIMIT %s",
                (tenant_id, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, tenant_id: str, role: Role) -> Optional[User]:
        if not is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET role = %s, updated_at = %s
                WHERE user_id = %s AND tenant_id = %s
                RETURNING *
                """,
                (Role(role).value, datetime.utcnow(), user_id, tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password(self, user_id: str, tenant_id: str, password_hash: str) -> bool:
        if not is_uuid(user_id):
            return False
        now = datetime.utcnow()
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, password_changed_at = %s, failed_attempts = 0,
                    account_locked = FALSE, updated_at = %s
                WHERE user_id = %s AND tenant_id = %s
                """,
                (password_hash, now, now, user_id, tenant_id),
            )
            return result.rowcount > 0

    def record_login_success(self, user_id: str, tenant_id: str) -> Optional[User]:
        now = datetime.utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET last_login = %s, failed_attempts = 0, updated_at = %s
                WHERE user_id = %s AND tenant_id = %s
                RETURNING *
                """,
                (now, now, user_id, tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login_failure(
        self, user_id: str, tenant_id: str, *, lock_threshold: int
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_attempts = failed_attempts + 1,
                    account_locked = account_locked
                        OR (%s > 0 AND failed_attempts + 1 >= %s),
                    updated_at = %s
                WHERE user_id = %s AND tenant_id = %s
                RETURNING *
                """,
                (lock_threshold, lock_threshold, datetime.utcnow(), user_id, tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str, tenant_id: str) -> bool:
        if not is_uuid(user_id):
            return False
        with self._connect() as conn:
            # Release the employee linkage before the account goes away
            conn.execute(
                "UPDATE employees SET user_id = NULL, updated_at = %s WHERE user_id = %s AND tenant_id = %s",
                (datetime.utcnow(), user_id, tenant_id),
            )
            result = conn.execute(
                "DELETE FROM users WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            )
            return result.rowcount > 0

    # employee profiles
    def create_employee(
        self,
        *,
        tenant_id: str,
        name: str,
        email: str,
        user_id: Optional[str] = None,
        manager_id: Optional[str] = None,
        phone: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        gender: Optional[str] = None,
        position: Optional[str] = None,
        department: Optional[str] = None,
        status: str = EMPLOYEE_ACTIVE,
    ) -> EmployeeProfile:
        with self._connect() as conn:
            if manager_id is not None:
                exists = is_uuid(manager_id) and conn.execute(
                    "SELECT 1 FROM employees WHERE id = %s AND tenant_id = %s",
                    (manager_id, tenant_id),
                ).fetchone()
                if not exists:
                    raise ConstraintViolation(
                        "manager not found in tenant", {"field": "manager_id"}
                    )
            # Serialize code allocation per tenant
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"employee_code:{tenant_id}",)
            )
            codes = conn.execute(
                "SELECT employee_code FROM employees WHERE tenant_id = %s", (tenant_id,)
            ).fetchall()
            profile = EmployeeProfile(
                id=generate_uuid(),
                tenant_id=tenant_id,
                employee_code=next_employee_code(r["employee_code"] for r in codes),
                name=name,
                email=normalize_email(email),
                user_id=user_id,
                manager_id=manager_id,
                phone=phone,
                date_of_birth=date_of_birth,
                gender=gender,
                position=position,
                department=department,
                status=status,
            )
            conn.execute(
                """
                INSERT INTO employees (
                    id, tenant_id, employee_code, user_id, manager_id, name, email, phone,
                    date_of_birth, gender, position, department, status, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    profile.id,
                    profile.tenant_id,
                    profile.employee_code,
                    profile.user_id,
                    profile.manager_id,
                    profile.name,
                    profile.email,
                    profile.phone,
                    profile.date_of_birth,
                    profile.gender,
                    profile.position,
                    profile.department,
                    profile.status,
                    profile.created_at,
                    profile.updated_at,
                ),
            )
            if user_id is not None:
                conn.execute(
                    "UPDATE users SET employee_id = %s WHERE user_id = %s AND tenant_id = %s",
                    (profile.id, user_id, tenant_id),
                )
        return profile

    def get_employee(self, employee_id: str, tenant_id: str) -> Optional[EmployeeProfile]:
        if not is_uuid(employee_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM employees WHERE id = %s AND tenant_id = %s",
                (employee_id, tenant_id),
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def get_employee_by_code(
        self, employee_code: str, tenant_id: str
    ) -> Optional[EmployeeProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM employees WHERE employee_code = %s AND tenant_id = %s",
                (employee_code.strip().upper(), tenant_id),
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def get_employee_by_user(
        self, user_id: str, tenant_id: str
    ) -> Optional[EmployeeProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM employees WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def update_employee(
        self, employee_id: str, tenant_id: str, fields: Dict[str, Any]
    ) -> Optional[EmployeeProfile]:
        unknown = set(fields) - EMPLOYEE_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported employee fields: {sorted(unknown)}")
        if not is_uuid(employee_id):
            return None
        if not fields:
            return self.get_employee(employee_id, tenant_id)
        if fields.get("manager_id") == employee_id:
            raise ConstraintViolation("manager not found in tenant", {"field": "manager_id"})
        if fields.get("email"):
            fields = {**fields, "email": normalize_email(fields["email"])}
        # Column names come from EMPLOYEE_UPDATABLE_FIELDS, never from user input
        assignments = ", ".join(f"{name} = %s" for name in sorted(fields))
        values = [fields[name] for name in sorted(fields)]
        with self._connect() as conn:
            manager_id = fields.get("manager_id")
            if manager_id is not None:
                exists = is_uuid(manager_id) and conn.execute(
                    "SELECT 1 FROM employees WHERE id = %s AND tenant_id = %s",
                    (manager_id, tenant_id),
                ).fetchone()
                if not exists:
                    raise ConstraintViolation(
                        "manager not found in tenant", {"field": "manager_id"}
                    )
            row = conn.execute(
                f"""
                UPDATE employees SET {assignments}, updated_at = %s
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (*values, datetime.utcnow(), employee_id, tenant_id),
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def list_direct_reports(self, manager_id: str, tenant_id: str) -> List[EmployeeProfile]:
        if not is_uuid(manager_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM employees WHERE manager_id = %s AND tenant_id = %s ORDER BY employee_code",
                (manager_id, tenant_id),
            ).fetchall()
        return [self._row_to_employee(row) for row in rows]

    def delete_employee(self, employee_id: str, tenant_id: str) -> bool:
        if not is_uuid(employee_id):
            return False
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET employee_id = NULL WHERE employee_id = %s AND tenant_id = %s",
                (employee_id, tenant_id),
            )
            result = conn.execute(
                "DELETE FROM employees WHERE id = %s AND tenant_id = %s",
                (employee_id, tenant_id),
            )
            return result.rowcount > 0

    # password reset tokens
    def create_reset_token(
        self, user_id: str, tenant_id: str, token_hash: str, ttl_minutes: int
    ) -> PasswordResetToken:
        token = PasswordResetToken.new(user_id, tenant_id, token_hash, ttl_minutes)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_tokens (id, user_id, tenant_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.tenant_id,
                    token.token_hash,
                    token.expires_at,
                    token.created_at,
                ),
            )
        return token

    def consume_reset_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        now = now or datetime.utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_tokens SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at", now),
        )

    # row mapping
    @staticmethod
    def _row_to_tenant(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["tenant_id"]),
            name=row["name"],
            subdomain=row["subdomain"],
            status=row.get("status", TENANT_ACTIVE),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
        )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        tenant_id = row.get("tenant_id")
        employee_id = row.get("employee_id")
        return User(
            id=str(row["user_id"]),
            tenant_id=str(tenant_id) if tenant_id else None,
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            name=row["name"],
            role=Role(row.get("role", Role.EMPLOYEE.value)),
            is_active=row.get("is_active", True),
            employee_id=str(employee_id) if employee_id else None,
            failed_attempts=row.get("failed_attempts", 0),
            account_locked=row.get("account_locked", False),
            last_login=row.get("last_login"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
        )

    @staticmethod
    def _row_to_employee(row: Dict[str, Any]) -> EmployeeProfile:
        user_id = row.get("user_id")
        manager_id = row.get("manager_id")
        return EmployeeProfile(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            employee_code=row["employee_code"],
            name=row["name"],
            email=row["email"],
            user_id=str(user_id) if user_id else None,
            manager_id=str(manager_id) if manager_id else None,
            phone=row.get("phone"),
            date_of_birth=row.get("date_of_birth"),
            gender=row.get("gender"),
            position=row.get("position"),
            department=row.get("department"),
            status=row.get("status", EMPLOYEE_ACTIVE),
            created_at=row.get("created_at", datetime.utcnow()),
            updated_at=row.get("updated_at", datetime.utcnow()),
        )
