from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from admincore.api.error_handling import register_exception_handlers
from admincore.api.routes import router
from admincore.config import Settings, get_settings
from admincore.logging import bind_actor, get_logger, set_correlation_id
from admincore.service.errors import ServiceError
from admincore.service.runtime import get_runtime
from admincore.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime (and seed the catalog) on startup; close the store on shutdown."""
    runtime = get_runtime()
    logger.info(
        "app_started",
        version=__version__,
        build=app.state.settings.build_sha,
        store=type(runtime.store).__name__,
    )

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    # no wildcard: credentials may be enabled
    return settings.cors_allow_origins or list(_DEV_ORIGINS)


def _actor_from_header(authorization: Optional[str]) -> Optional[str]:
    """Best-effort user id for log context; route dependencies do the real check."""
    if not authorization:
        return None
    try:
        return get_runtime().gate.authenticate_bearer(authorization).user_id
    except ServiceError:
        return None


def _store_health(runtime) -> Dict[str, Any]:
    if isinstance(runtime.store, PostgresStore):
        with runtime.store._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        kind = "postgres"
    else:
        kind = "memory"
    return {"status": "healthy", "type": kind, "catalog": runtime.store.counts()}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="AdminCore", version=__version__, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def bind_request_context(request, call_next):
        """Bind correlation id and caller for logging; echo ``X-Request-ID``."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_actor(_actor_from_header(request.headers.get("Authorization")))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # token and permission payloads must never be cached
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        response.headers.setdefault("API-Version", __version__)
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Store connectivity, seeded catalog sizes, version and build."""
        runtime = get_runtime()
        try:
            database = await asyncio.wait_for(
                asyncio.to_thread(_store_health, runtime), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            database = {"status": "unhealthy", "type": "postgres"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            database = {"status": "unhealthy", "type": type(runtime.store).__name__}

        return {
            "status": database["status"],
            "checks": {"database": database},
            "version": __version__,
            "build": settings.build_sha,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
