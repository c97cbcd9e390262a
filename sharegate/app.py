from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sharegate.api.error_handling import register_exception_handlers
from sharegate.api.routes import router, websocket_endpoint
from sharegate.api.schemas import HealthResponse
from sharegate.config import Settings, get_settings
from sharegate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the connection store sweep and release clients on shutdown."""
    from sharegate.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    logger.info("broker_started", ws_path=runtime.settings.ws_path)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def health() -> JSONResponse:
    """Report connection store reachability and build info."""
    from sharegate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        store_ok = await asyncio.wait_for(
            runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="connection_store")
        store_ok = False
    body = HealthResponse(
        status="healthy" if store_ok else "unhealthy",
        version=__version__,
        build=runtime.settings.build_sha,
        checks={
            "connection_store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": runtime.settings.connection_store.value,
            }
        },
        live_connections=len(runtime.registry),
    )
    return JSONResponse(body.model_dump(), status_code=200 if store_ok else 503)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="sharegate", version=__version__, lifespan=lifespan)

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
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.add_api_route("/healthz", health, methods=["GET"])
    app.add_api_websocket_route(settings.ws_path, websocket_endpoint)
    # Catch-all HTTP dispatch goes last so it never shadows the routes above
    app.include_router(router)
    return app


app = create_app()
