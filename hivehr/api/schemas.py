from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hivehr.storage.models import EmployeeProfile, Role, SafeUser, Tenant

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "tenant_not_found",
    "invalid_login_url",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Requests. Bodies use camelCase keys; validation of formats happens in the
# services so that CLI and HTTP callers get identical errors.


class LoginRequest(_CamelModel):
    login_identifier: str = Field(alias="loginIdentifier", max_length=254)
    password: str = Field(max_length=128)


class RegisterRequest(_CamelModel):
    company_name: str = Field(alias="companyName", max_length=200)
    company_domain: str = Field(alias="companyDomain", max_length=63)
    admin_name: str = Field(alias="adminName", max_length=200)
    admin_email: str = Field(alias="adminEmail", max_length=254)
    admin_password: str = Field(alias="adminPassword", max_length=128)
    admin_username: Optional[str] = Field(default=None, alias="adminUsername", max_length=64)


class ForgotPasswordRequest(_CamelModel):
    email: str = Field(max_length=254)


class DomainForgotPasswordRequest(_CamelModel):
    company_domain: str = Field(alias="companyDomain", max_length=63)
    email: str = Field(max_length=254)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(max_length=256)
    new_password: str = Field(alias="newPassword", max_length=128)


class CreateUserRequest(_CamelModel):
    name: str = Field(max_length=200)
    email: str = Field(max_length=254)
    role: Role = Role.EMPLOYEE
    username: Optional[str] = Field(default=None, max_length=64)
    position: Optional[str] = Field(default=None, max_length=200)
    department: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)
    manager_id: Optional[str] = Field(default=None, alias="managerId", max_length=64)


class UpdateRoleRequest(_CamelModel):
    role: Role


class UpdateEmployeeRequest(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, alias="dateOfBirth", max_length=32)
    gender: Optional[str] = Field(default=None, max_length=32)
    position: Optional[str] = Field(default=None, max_length=200)
    department: Optional[str] = Field(default=None, max_length=200)
    status: Optional[str] = Field(default=None, max_length=32)
    manager_id: Optional[str] = Field(default=None, alias="managerId", max_length=64)
    role: Optional[Role] = None

    def changed_fields(self) -> dict[str, Any]:
        """Fields present in the request body, keyed by attribute name."""
        return {name: getattr(self, name) for name in self.model_fields_set}


# Responses


class UserResponse(BaseModel):
    id: str
    tenant_id: Optional[str]
    email: str
    username: str
    name: str
    role: Role
    is_active: bool
    employee_id: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: SafeUser) -> "UserResponse":
        return cls(
            id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            username=user.username,
            name=user.name,
            role=user.role,
            is_active=user.is_active,
            employee_id=user.employee_id,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class TenantResponse(BaseModel):
    id: str
    name: str
    subdomain: str
    status: str
    created_at: datetime

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            subdomain=tenant.subdomain,
            status=tenant.status,
            created_at=tenant.created_at,
        )


class EmployeeResponse(BaseModel):
    id: str
    tenant_id: str
    employee_code: str
    name: str
    email: str
    user_id: Optional[str] = None
    manager_id: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    position: Optional[str] = None
    department: Optional[str] = None
    status: str
    updated_at: datetime

    @classmethod
    def from_profile(cls, profile: EmployeeProfile) -> "EmployeeResponse":
        return cls(
            id=profile.id,
            tenant_id=profile.tenant_id,
            employee_code=profile.employee_code,
            name=profile.name,
            email=profile.email,
            user_id=profile.user_id,
            manager_id=profile.manager_id,
            phone=profile.phone,
            date_of_birth=profile.date_of_birth,
            gender=profile.gender,
            position=profile.position,
            department=profile.department,
            status=profile.status,
            updated_at=profile.updated_at,
        )


class LoginResponse(BaseModel):
    user: UserResponse
    tenant_domain: str
    session_expires_at: datetime


class RegistrationResponse(BaseModel):
    tenant: TenantResponse
    admin_user: UserResponse
    login_url: str


class SessionInfoResponse(BaseModel):
    user_id: str
    role: Role
    tenant_id: str
    tenant_domain: str
    username: str
    expires_at: Optional[datetime] = None


class AccountResponse(BaseModel):
    user: UserResponse
    employee: Optional[EmployeeResponse] = None


class UserListResponse(BaseModel):
    items: List[UserResponse]


class MessageResponse(BaseModel):
    message: str
