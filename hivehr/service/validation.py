from __future__ import annotations

import re
import unicodedata
from typing import Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from hivehr.service.errors import ValidationError

SUBDOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("Invalid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email address")
    return normalized


def validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) < 3:
        raise ValueError("Username must be at least 3 characters")
    if len(value) > 64:
        raise ValueError("Username must be at most 64 characters")
    if not USERNAME_PATTERN.match(value):
        raise ValueError("Username may only contain letters, numbers and underscores")
    return value.lower()


def derive_username(email: str) -> str:
    """Username from an email local part, reduced to the allowed alphabet."""
    local = email.split("@", 1)[0].lower()
    candidate = re.sub(r"[^a-z0-9_]", "_", local).strip("_") or "admin"
    return candidate.ljust(3, "0")[:64]


def to_service_error(exc: PydanticValidationError, model: Type[BaseModel]) -> ValidationError:
    """Convert pydantic errors into a ValidationError carrying input field paths."""
    aliases = {
        name: (field.alias or name) for name, field in model.model_fields.items()
    }
    errors = []
    for err in exc.errors():
        path = [aliases.get(part, part) if isinstance(part, str) else part for part in err["loc"]]
        message = err["msg"]
        # pydantic prefixes errors raised in validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"path": path, "message": message})
    first = errors[0]["message"] if errors else "Invalid input"
    return ValidationError(first, detail={"errors": errors})
