from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hivehr.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, built once at startup and injected into services."""

    database_url: str = env_field("postgresql://localhost:5432/hivehr", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/hivehr", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors.",
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")

    # Host-based tenant routing
    root_domain: str = env_field(
        "localhost",
        "ROOT_DOMAIN",
        description="Deployment root domain; tenants live at {subdomain}.{root_domain}",
    )
    app_base_url: str = env_field(
        "http://localhost:3000",
        "APP_BASE_URL",
        description="Public base URL used to build absolute login and reset links",
    )

    # Sessions and credentials
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_TTL_SECONDS")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    max_failed_logins: int = env_field(
        5,
        "MAX_FAILED_LOGINS",
        description="Consecutive password failures before an account is locked",
    )

    # Store
    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS")
    store_pool_min_size: int = env_field(1, "STORE_POOL_MIN_SIZE")
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE")

    # Internal SMTP, used only for system emails (registration, recovery, alerts)
    internal_smtp_host: Optional[str] = env_field(None, "INTERNAL_SMTP_HOST")
    internal_smtp_port: int = env_field(587, "INTERNAL_SMTP_PORT")
    internal_smtp_user: Optional[str] = env_field(None, "INTERNAL_SMTP_USER")
    internal_smtp_password: Optional[str] = env_field(None, "INTERNAL_SMTP_PASSWORD")
    internal_smtp_secure: Optional[bool] = env_field(
        None,
        "INTERNAL_SMTP_SECURE",
        description="Implicit TLS; defaults to true when the port is 465",
    )
    internal_from_email: Optional[str] = env_field(None, "INTERNAL_FROM_EMAIL")
    internal_from_name: str = env_field("HiveHR", "INTERNAL_FROM_NAME")
    admin_email: Optional[str] = env_field(
        None,
        "ADMIN_EMAIL",
        description="Operator address that receives delivery and rollback alerts",
    )
    smtp_timeout_seconds: float = env_field(15.0, "SMTP_TIMEOUT_SECONDS")

    # Outbound notification queue
    notification_max_attempts: int = env_field(3, "NOTIFICATION_MAX_ATTEMPTS")
    notification_retry_delay_seconds: float = env_field(
        2.0, "NOTIFICATION_RETRY_DELAY_SECONDS"
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("root_domain")
    @classmethod
    def _normalize_root_domain(cls, value: str) -> str:
        normalized = (value or "").strip().lower().lstrip(".")
        # Operators sometimes paste "example.com:3000"; the port is not part of the domain
        normalized = normalized.split(":", 1)[0]
        if not normalized:
            raise ValueError("ROOT_DOMAIN must not be empty")
        return normalized

    @field_validator("app_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError("APP_BASE_URL must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/hivehr"))
        secret_path = fs_root / ".session_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".session_secret_", suffix=".tmp"
        )
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _default_smtp_secure(self) -> "Settings":
        if self.internal_smtp_secure is None:
            object.__setattr__(self, "internal_smtp_secure", self.internal_smtp_port == 465)
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def base_scheme(self) -> str:
        return urlparse(self.app_base_url).scheme

    @property
    def base_port_suffix(self) -> str:
        """``:port`` taken from APP_BASE_URL, empty for default ports."""
        port = urlparse(self.app_base_url).port
        if port is None or port in (80, 443):
            return ""
        return f":{port}"

    def tenant_url(self, subdomain: str, path: str = "/") -> str:
        """Absolute URL on a tenant's subdomain."""
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_scheme}://{subdomain}.{self.root_domain}{self.base_port_suffix}{path}"

    def root_url(self, path: str = "/") -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_scheme}://{self.root_domain}{self.base_port_suffix}{path}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
