from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from hivehr.logging import get_logger
from hivehr.storage.common import (
    generate_uuid,
    next_employee_code,
    normalize_email,
    normalize_subdomain,
    normalize_username,
)
from hivehr.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process identity store with JSON state persistence.

    Mirrors the postgres schema constraints: subdomains are globally unique,
    email and username are unique per tenant, employee codes are unique per
    tenant, and an employee profile links to at most one user.
    """

    def __init__(self, fs_root: str = "/tmp/hivehr") -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.employees: Dict[str, EmployeeProfile] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def verify_connection(self) -> None:
        return None

    # tenants
    def create_tenant(
        self, name: str, subdomain: str, *, status: str = TENANT_ACTIVE
    ) -> Tenant:
        normalized = normalize_subdomain(subdomain)
        with self._data_lock:
            if any(t.subdomain == normalized for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant subdomain already exists", {"field": "subdomain"}
                )
            tenant = Tenant(
                id=generate_uuid(), name=name, subdomain=normalized, status=status
            )
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        normalized = normalize_subdomain(subdomain)
        with self._data_lock:
            return next(
                (t for t in self.tenants.values() if t.subdomain == normalized), None
            )

    def is_subdomain_available(self, subdomain: str) -> bool:
        return self.get_tenant_by_subdomain(subdomain) is None

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._data_lock:
            if self.tenants.pop(tenant_id, None) is None:
                return False
            # Cascade like the postgres foreign keys
            for user_id, user in list(self.users.items()):
                if user.tenant_id == tenant_id:
                    self.users.pop(user_id, None)
            for emp_id, emp in list(self.employees.items()):
                if emp.tenant_id == tenant_id:
                    self.employees.pop(emp_id, None)
            for token_id, token in list(self.reset_tokens.items()):
                if token.tenant_id == tenant_id:
                    self.reset_tokens.pop(token_id, None)
            self._persist_state()
            return True

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            return sorted(self.tenants.values(), key=lambda t: t.created_at)

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
        email = normalize_email(email)
        username = normalize_username(username)
        with self._data_lock:
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found for user", {"field": "tenant_id"}
                )
            for existing in self.users.values():
                if existing.tenant_id != tenant_id:
                    continue
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            now = datetime.utcnow()
            user = User(
                id=generate_uuid(),
                tenant_id=tenant_id,
                email=email,
                username=username,
                password_hash=password_hash,
                name=name,
                role=Role(role),
                is_active=is_active,
                employee_id=employee_id,
                password_changed_at=now,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str, tenant_id: Optional[str] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and tenant_id is not None and user.tenant_id != tenant_id:
                return None
            return user

    def get_user_by_email(self, email: str, tenant_id: Optional[str]) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email and u.tenant_id == tenant_id
                ),
                None,
            )

    def get_user_by_username(
        self, username: str, tenant_id: Optional[str]
    ) -> Optional[User]:
        username = normalize_username(username)
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.username == username and u.tenant_id == tenant_id
                ),
                None,
            )

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if u.tenant_id == tenant_id]
            return sorted(results, key=lambda u: u.created_at)[:limit]

    def update_user_role(self, user_id: str, tenant_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id, tenant_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def set_password(self, user_id: str, tenant_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.get_user(user_id, tenant_id)
            if not user:
                return False
            now = datetime.utcnow()
            user.password_hash = password_hash
            user.password_changed_at = now
            user.failed_attempts = 0
            user.account_locked = False
            user.updated_at = now
            self._persist_state()
            return True

    def record_login_success(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id, tenant_id)
            if not user:
                return None
            now = datetime.utcnow()
            user.last_login = now
            user.failed_attempts = 0
            user.updated_at = now
            self._persist_state()
            return user

    def record_login_failure(
        self, user_id: str, tenant_id: str, *, lock_threshold: int
    ) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id, tenant_id)
            if not user:
                return None
            user.failed_attempts += 1
            if lock_threshold > 0 and user.failed_attempts >= lock_threshold:
                user.account_locked = True
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            user = self.get_user(user_id, tenant_id)
            if not user:
                return False
            # Release the employee linkage before the account goes away
            for emp in self.employees.values():
                if emp.tenant_id == tenant_id and emp.user_id == user_id:
                    emp.user_id = None
                    emp.updated_at = datetime.utcnow()
            for token_id, token in list(self.reset_tokens.items()):
                if token.user_id == user_id:
                    self.reset_tokens.pop(token_id, None)
            self.users.pop(user_id, None)
            self._persist_state()
            return True

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
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found for employee", {"field": "tenant_id"}
                )
            if manager_id is not None and not self.get_employee(manager_id, tenant_id):
                raise ConstraintViolation(
                    "manager not found in tenant", {"field": "manager_id"}
                )
            if user_id is not None and any(
                e.user_id == user_id for e in self.employees.values()
            ):
                raise ConstraintViolation(
                    "user already linked to an employee", {"field": "user_id"}
                )
            code = next_employee_code(
                e.employee_code for e in self.employees.values() if e.tenant_id == tenant_id
            )
            profile = EmployeeProfile(
                id=generate_uuid(),
                tenant_id=tenant_id,
                employee_code=code,
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
            self.employees[profile.id] = profile
            if user_id is not None and user_id in self.users:
                self.users[user_id].employee_id = profile.id
            self._persist_state()
            return profile

    def get_employee(self, employee_id: str, tenant_id: str) -> Optional[EmployeeProfile]:
        with self._data_lock:
            emp = self.employees.get(employee_id)
            if emp and emp.tenant_id == tenant_id:
                return emp
            return None

    def get_employee_by_code(
        self, employee_code: str, tenant_id: str
    ) -> Optional[EmployeeProfile]:
        code = employee_code.strip().upper()
        with self._data_lock:
            return next(
                (
                    e
                    for e in self.employees.values()
                    if e.tenant_id == tenant_id and e.employee_code == code
                ),
                None,
            )

    def get_employee_by_user(
        self, user_id: str, tenant_id: str
    ) -> Optional[EmployeeProfile]:
        with self._data_lock:
            return next(
                (
                    e
                    for e in self.employees.values()
                    if e.tenant_id == tenant_id and e.user_id == user_id
                ),
                None,
            )

    def update_employee(
        self, employee_id: str, tenant_id: str, fields: Dict[str, Any]
    ) -> Optional[EmployeeProfile]:
        unknown = set(fields) - EMPLOYEE_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported employee fields: {sorted(unknown)}")
        with self._data_lock:
            emp = self.get_employee(employee_id, tenant_id)
            if not emp:
                return None
            manager_id = fields.get("manager_id")
            if manager_id is not None:
                if manager_id == employee_id or not self.get_employee(manager_id, tenant_id):
                    raise ConstraintViolation(
                        "manager not found in tenant", {"field": "manager_id"}
                    )
            if "email" in fields and fields["email"]:
                fields = {**fields, "email": normalize_email(fields["email"])}
            updated = emp.with_updates(fields)
            self.employees[employee_id] = updated
            self._persist_state()
            return updated

    def list_direct_reports(self, manager_id: str, tenant_id: str) -> List[EmployeeProfile]:
        with self._data_lock:
            return [
                e
                for e in self.employees.values()
                if e.tenant_id == tenant_id and e.manager_id == manager_id
            ]

    def delete_employee(self, employee_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            emp = self.get_employee(employee_id, tenant_id)
            if not emp:
                return False
            for report in self.employees.values():
                if report.manager_id == employee_id:
                    report.manager_id = None
            for user in self.users.values():
                if user.employee_id == employee_id:
                    user.employee_id = None
            self.employees.pop(employee_id, None)
            self._persist_state()
            return True

    # password reset tokens
    def create_reset_token(
        self, user_id: str, tenant_id: str, token_hash: str, ttl_minutes: int
    ) -> PasswordResetToken:
        with self._data_lock:
            token = PasswordResetToken.new(user_id, tenant_id, token_hash, ttl_minutes)
            self.reset_tokens[token.id] = token
            self._persist_state()
            return token

    def consume_reset_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        now = now or datetime.utcnow()
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash),
                None,
            )
            if not token or token.used_at is not None or token.expires_at <= now:
                return None
            token.used_at = now
            self._persist_state()
            return token

    # persistence
    def _persist_state(self) -> None:
        state = {
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "users": [self._serialize(u) for u in self.users.values()],
            "employees": [self._serialize(e) for e in self.employees.values()],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: Tenant(**self._deserialize(t, Tenant)) for t in data.get("tenants", [])
        }
        self.users = {}
        for raw in data.get("users", []):
            fields = self._deserialize(raw, User)
            fields["role"] = Role(fields.get("role", Role.EMPLOYEE.value))
            self.users[raw["id"]] = User(**fields)
        self.employees = {
            e["id"]: EmployeeProfile(**self._deserialize(e, EmployeeProfile))
            for e in data.get("employees", [])
        }
        self.reset_tokens = {
            t["id"]: PasswordResetToken(**self._deserialize(t, PasswordResetToken))
            for t in data.get("reset_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            tenants=len(self.tenants),
            users=len(self.users),
        )
        return True

    @staticmethod
    def _serialize(record: Any) -> dict:
        out = {}
        for key, value in asdict(record).items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Role):
                value = value.value
            out[key] = value
        return out

    @staticmethod
    def _deserialize(raw: dict, cls: type) -> dict:
        fields = {}
        for key, value in raw.items():
            if key not in cls.__dataclass_fields__:
                continue
            if isinstance(value, str) and (
                key.endswith("_at") or key == "last_login"
            ):
                value = datetime.fromisoformat(value)
            fields[key] = value
        return fields
