from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantgate.api.error_handling import error_response, register_exception_handlers
from tenantgate.api.routes import router
from tenantgate.api.schemas import Envelope
from tenantgate.config import get_settings
from tenantgate.logging import clear_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "1.0.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its clients on shutdown."""
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.verify_store()
    logger.info(
        "server_started",
        version=__version__,
        port=runtime.settings.port,
        ollama_url=runtime.settings.ollama_url,
    )
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Tenant Gateway", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins or ["*"],
        allow_credentials=bool(settings.cors_allow_origins),
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Tenant-ID", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of the request with X-Request-ID or a fresh UUID."""
        clear_request_context()
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health", response_model=Envelope, tags=["system"])
    async def health():
        """Report whether the credential store answers a ping."""
        from tenantgate.service.runtime import get_runtime

        runtime = get_runtime()
        try:
            await asyncio.wait_for(runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_store_failed", error_type=type(exc).__name__, error=str(exc))
            return error_response(
                503, "Credential store is unreachable", {"store": "unhealthy"}
            )
        return Envelope(status="ok", data={"status": "healthy", "store": "healthy", "version": __version__})

    @app.get("/", response_model=Envelope, tags=["system"])
    async def index() -> Envelope:
        endpoints: Dict[str, Any] = {
            "auth": {
                "register": "POST /api/auth/register",
                "login": "POST /api/auth/login",
                "logout": "POST /api/auth/logout",
                "me": "GET /api/auth/me",
            },
            "users": {
                "create": "POST /api/users",
                "list": "GET /api/users",
                "get": "GET /api/users/{user_id}",
                "update": "PATCH /api/users/{user_id}",
            },
            "tenant": {"get": "GET /api/tenant", "update": "PATCH /api/tenant"},
            "sessions": {
                "get": "GET /api/sessions/{session_id}",
                "delete": "DELETE /api/sessions/{session_id}",
            },
            "llm": {
                "chat": "POST /api/llm/chat",
                "models": "GET /api/llm/models",
                "health": "GET /api/llm/health",
            },
            "health": "GET /health",
            "docs": "GET /docs",
        }
        return Envelope(
            status="ok",
            data={"name": "tenantgate", "version": __version__, "endpoints": endpoints},
        )

    return app


app = create_app()
