from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionvault.api.error_handling import register_exception_handlers
from sessionvault.api.routes import router
from sessionvault.config import Settings, get_settings
from sessionvault.logging import get_logger, set_correlation_id
from sessionvault.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the HTTP app.

    When ``runtime`` is given it is used as-is and left open on shutdown for
    the caller to close; otherwise one is built at startup from ``settings``
    (or the environment) and closed on shutdown.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_runtime = getattr(app.state, "runtime", None) is None
        if owns_runtime:
            app.state.runtime = Runtime(settings)
        logger.info("app_started", owns_runtime=owns_runtime)
        yield
        if owns_runtime:
            try:
                app.state.runtime.close()
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))
            app.state.runtime = None

    app = FastAPI(title="sessionvault", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Take the correlation id from ``X-Request-ID`` or mint one, and echo it back."""
        client_request_id = request.headers.get("X-Request-ID")
        correlation_id = set_correlation_id(client_request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app
