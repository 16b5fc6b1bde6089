from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portalauth.api.error_handling import register_exception_handlers
from portalauth.api.routes import router
from portalauth.api.schemas import Envelope, HealthResponse
from portalauth.config import Settings, get_settings
from portalauth.logging import get_correlation_id, get_logger, set_correlation_id
from portalauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the runtime's stores on startup and release them on shutdown."""
    runtime: Runtime = app.state.runtime
    await runtime.connect()
    logger.info("app_started", version=__version__)
    try:
        yield
    finally:
        await runtime.close()
        logger.info("runtime_cleanup_complete")


def create_app(
    settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the ASGI app; serve with ``uvicorn --factory portalauth.app:create_app``."""
    settings = settings or (runtime.settings if runtime else get_settings())
    runtime = runtime or Runtime(settings)

    app = FastAPI(title="Portal Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials="*" not in settings.cors_allow_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with X-Request-ID (client supplied or generated).

        The ID is bound for structured logging and echoed on the response.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        """Report whether the session store answers a ping."""
        runtime: Runtime = request.app.state.runtime
        try:
            store_ok = await asyncio.wait_for(
                runtime.healthy(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            store_ok = False
        body = Envelope(
            success=store_ok,
            data=HealthResponse(
                status="ok" if store_ok else "degraded",
                store="ok" if store_ok else "unreachable",
            ),
            request_id=get_correlation_id() or str(uuid4()),
        )
        return JSONResponse(
            status_code=200 if store_ok else 503,
            content=body.model_dump(mode="json"),
        )

    return app
