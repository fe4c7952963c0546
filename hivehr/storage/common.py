"""Helpers shared between the memory and postgres stores.

Both backends normalize identifiers the same way so that lookups behave
identically regardless of which store is configured.
"""

from __future__ import annotations

import re
import uuid
from typing import Iterable, Optional

EMPLOYEE_CODE_PREFIX = "EMP-"
_EMPLOYEE_CODE_PATTERN = re.compile(rf"^{re.escape(EMPLOYEE_CODE_PREFIX)}(\d+)$")

# Constraint names used by the postgres schema, mapped to the logical field
# reported in ConstraintViolation.detail["field"]
CONSTRAINT_FIELDS = {
    "tenants_subdomain_key": "subdomain",
    "users_tenant_email_key": "email",
    "users_tenant_username_key": "username",
    "employees_tenant_code_key": "employee_code",
    "employees_user_id_key": "user_id",
}


def generate_uuid() -> str:
    return str(uuid.uuid4())


def is_uuid(value: Optional[str]) -> bool:
    """Id columns are UUIDs; anything else can never match a row."""
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def normalize_subdomain(subdomain: str) -> str:
    return subdomain.strip().lower()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip().lower()


def next_employee_code(existing_codes: Iterable[Optional[str]]) -> str:
    """Return the next ``EMP-NNN`` code after the highest one in use."""
    highest = 0
    for code in existing_codes:
        if not code:
            continue
        match = _EMPLOYEE_CODE_PATTERN.match(code)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{EMPLOYEE_CODE_PREFIX}{highest + 1:03d}"


def field_for_constraint(constraint_name: Optional[str], message: str = "") -> Optional[str]:
    """Map a unique-constraint name (or an error message naming it) to a field."""
    if constraint_name and constraint_name in CONSTRAINT_FIELDS:
        return CONSTRAINT_FIELDS[constraint_name]
    for name, field in CONSTRAINT_FIELDS.items():
        if name in message:
            return field
    return None
