from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hivehr.api.error_handling import register_exception_handlers
from hivehr.api.routes import router
from hivehr.config import Settings, get_settings
from hivehr.logging import begin_request, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the notification worker; stop it and release the store on shutdown."""
    from hivehr.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.notifications.start()
    except Exception as exc:
        logger.error("startup_notification_worker_failed", error=str(exc))

    yield

    try:
        await runtime.notifications.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> list[str]:
    """The root site plus any tenant subdomain of it."""
    return [settings.root_url("").rstrip("/"), settings.app_base_url]


def _origin_regex(settings: Settings) -> str:
    root = settings.root_domain.replace(".", r"\.")
    return rf"^{settings.base_scheme}://[a-z0-9-]+\.{root}(:\d+)?$"


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="HiveHR", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_origin_regex=_origin_regex(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with the client's X-Request-ID, or a fresh one, and echo it back."""
        correlation_id = begin_request(
            request.headers.get("X-Request-ID"), request.headers.get("host")
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.get("/healthz")
    async def health() -> JSONResponse:
        """Store reachability and notification queue depth."""
        from hivehr.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Any] = {}
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["store"] = {"status": "ok"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            checks["store"] = {"status": "error", "error": "timeout"}
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            checks["store"] = {"status": "error", "error": "unavailable"}
        checks["notifications"] = {
            "status": "ok",
            "pending": runtime.notifications.pending,
            "failed": len(runtime.notifications.failed),
        }
        healthy = checks["store"]["status"] == "ok"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    app.include_router(router)
    register_exception_handlers(app)
    return app


app = create_app()
