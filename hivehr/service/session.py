from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Literal, Optional

from fastapi import Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hivehr.config import Settings
from hivehr.logging import get_logger
from hivehr.service.tenancy import is_local_host
from hivehr.storage.models import Role

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "hivehr_session"
SESSION_VERSION = 1


class SessionRecord(BaseModel):
    """Identity and tenant binding carried inside the session token."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    v: Literal[1] = SESSION_VERSION
    user_id: str
    tenant_id: str
    tenant_domain: str = Field(min_length=1)
    role: Role
    username: str = Field(min_length=1)
    issued_at: int
    expires_at: int

    @field_validator("user_id", "tenant_id")
    @classmethod
    def _check_uuid(cls, value: str) -> str:
        return str(uuid.UUID(value))

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_at <= int(now if now is not None else time.time())


@dataclass(frozen=True)
class IssuedSession:
    token: str
    record: SessionRecord


class SessionCodec:
    """Mints and validates HMAC-signed session tokens.

    The codec is stateless: nothing is stored server side, so a token is
    valid exactly as long as its signature checks out and it has not
    expired. Tenant binding against the request host is enforced by the
    caller.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._key = settings.session_secret.encode()

    def issue(
        self,
        *,
        user_id: str,
        tenant_id: str,
        tenant_domain: str,
        role: Role,
        username: str,
        now: Optional[float] = None,
    ) -> IssuedSession:
        issued_at = int(now if now is not None else time.time())
        record = SessionRecord(
            user_id=user_id,
            tenant_id=tenant_id,
            tenant_domain=tenant_domain,
            role=role,
            username=username,
            issued_at=issued_at,
            expires_at=issued_at + self.settings.session_ttl_seconds,
        )
        return IssuedSession(token=self._encode(record.model_dump(mode="json")), record=record)

    def validate(self, token: Optional[str], *, now: Optional[float] = None) -> Optional[SessionRecord]:
        record = self.peek(token)
        if record is None or record.is_expired(now):
            return None
        return record

    def peek(self, token: Optional[str]) -> Optional[SessionRecord]:
        """Return the record of a correctly signed token, expired or not."""
        if not token:
            return None
        payload = self._decode(token)
        if payload is None:
            return None
        try:
            return SessionRecord.model_validate(payload)
        except ValidationError as exc:
            logger.warning("session_payload_invalid", errors=exc.error_count())
            return None

    def cookie_options(self, host: Optional[str]) -> dict[str, Any]:
        options: dict[str, Any] = {
            "httponly": True,
            "secure": self.settings.is_production,
            "samesite": "lax",
            "path": "/",
            "max_age": self.settings.session_ttl_seconds,
        }
        root = self.settings.root_domain
        if not (is_local_host(root) or (host and is_local_host(host))):
            # Shared across every tenant subdomain; the binding check rejects replays
            options["domain"] = f".{root}"
        return options

    def apply_cookie(self, response: Response, token: str, host: Optional[str]) -> None:
        response.set_cookie(SESSION_COOKIE_NAME, token, **self.cookie_options(host))

    def clear_cookie(self, response: Response, host: Optional[str]) -> None:
        options = self.cookie_options(host)
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            path=options["path"],
            domain=options.get("domain"),
            secure=options["secure"],
            httponly=options["httponly"],
            samesite=options["samesite"],
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("session_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.warning("session_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("session_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
