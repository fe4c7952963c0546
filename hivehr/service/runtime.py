from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hivehr.config import Settings, get_settings, reset_settings_cache
from hivehr.logging import get_logger
from hivehr.service.accounts import AccountService
from hivehr.service.auth import AuthenticationService
from hivehr.service.authorization import AuthorizationGate
from hivehr.service.email import EmailService
from hivehr.service.notifications import NotificationQueue
from hivehr.service.recovery import PasswordRecoveryFlow
from hivehr.service.registration import RegistrationOrchestrator
from hivehr.service.session import SessionCodec
from hivehr.service.tenancy import TenantResolver
from hivehr.storage.memory import MemoryStore
from hivehr.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings):
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(
        settings.database_url,
        timeout_seconds=settings.store_timeout_seconds,
        min_size=settings.store_pool_min_size,
        max_size=settings.store_pool_max_size,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            root_domain=self.settings.root_domain,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.resolver = TenantResolver(self.store, self.settings)
        self.codec = SessionCodec(self.settings)
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("internal_smtp_not_configured", mode="log_only")
        self.notifications = NotificationQueue(self.email, self.settings)
        self.auth = AuthenticationService(self.store, self.resolver, self.codec, self.settings)
        self.gate = AuthorizationGate()
        self.registration = RegistrationOrchestrator(
            self.store, self.auth, self.notifications, self.settings
        )
        self.recovery = PasswordRecoveryFlow(
            self.store, self.resolver, self.auth, self.email, self.settings
        )
        self.accounts = AccountService(
            self.store, self.auth, self.gate, self.notifications, self.settings
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime
