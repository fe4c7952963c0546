from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional


class Role(str, Enum):
    ADMIN = "Admin"
    MANAGER = "Manager"
    EMPLOYEE = "Employee"


TENANT_ACTIVE = "ACTIVE"

EMPLOYEE_ACTIVE = "Active"
EMPLOYEE_INACTIVE = "Inactive"
EMPLOYEE_ON_LEAVE = "On Leave"
EMPLOYEE_STATUSES = (EMPLOYEE_ACTIVE, EMPLOYEE_INACTIVE, EMPLOYEE_ON_LEAVE)


@dataclass
class Tenant:
    id: str
    name: str
    subdomain: str
    status: str = TENANT_ACTIVE
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status.upper() == TENANT_ACTIVE


@dataclass
class User:
    id: str
    tenant_id: Optional[str]
    email: str
    username: str
    password_hash: str
    name: str
    role: Role = Role.EMPLOYEE
    is_active: bool = True
    employee_id: Optional[str] = None
    failed_attempts: int = 0
    account_locked: bool = False
    last_login: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def safe(self) -> "SafeUser":
        return SafeUser(
            id=self.id,
            tenant_id=self.tenant_id,
            email=self.email,
            username=self.username,
            name=self.name,
            role=self.role,
            is_active=self.is_active,
            employee_id=self.employee_id,
            last_login=self.last_login,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class SafeUser:
    """User record without credential material, safe to return to clients."""

    id: str
    tenant_id: Optional[str]
    email: str
    username: str
    name: str
    role: Role
    is_active: bool
    employee_id: Optional[str]
    last_login: Optional[datetime]
    created_at: datetime


@dataclass
class EmployeeProfile:
    id: str
    tenant_id: str
    employee_code: str
    name: str
    email: str
    user_id: Optional[str] = None
    # nullable reference to another profile in the same tenant
    manager_id: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    position: Optional[str] = None
    department: Optional[str] = None
    status: str = EMPLOYEE_ACTIVE
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status != EMPLOYEE_INACTIVE

    def with_updates(self, fields: Dict[str, object]) -> "EmployeeProfile":
        return replace(self, **fields, updated_at=datetime.utcnow())


EMPLOYEE_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "email",
        "phone",
        "date_of_birth",
        "gender",
        "position",
        "department",
        "status",
        "manager_id",
    }
)


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    tenant_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls, user_id: str, tenant_id: str, token_hash: str, ttl_minutes: int
    ) -> "PasswordResetToken":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            token_hash=token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )
