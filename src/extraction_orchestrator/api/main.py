"""FastAPI application for the extraction orchestrator.

Run with::

    uvicorn extraction_orchestrator.api.main:app --reload
"""

from __future__ import annotations

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from extraction_orchestrator.config.settings import Settings, get_settings
from extraction_orchestrator.core.logging_config import configure_logging, request_id_var

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def _track_request(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request id for the duration of the call and log the outcome.

    A caller-supplied ``X-Request-ID`` is reused so ids can be followed
    across services; otherwise a fresh UUID is minted.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed")
        raise
    finally:
        request_id_var.reset(token)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    event = "request_error" if response.status_code >= 500 else "request_complete"
    logger.info(event, status_code=response.status_code, elapsed_ms=elapsed_ms, request_id=request_id)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _lifespan(settings: Settings) -> Callable[[FastAPI], AsyncIterator[None]]:
    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        logger.info("application_startup", app_name=settings.app_name, log_level=settings.log_level)
        yield
        # The controller is created lazily by the dependency; it owns the
        # fetcher's HTTP client.
        controller = getattr(application.state, "controller", None)
        if controller is not None:
            await controller.aclose()
        logger.info("application_shutdown")

    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application; tests pass their own ``settings``."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Batch URL extraction with chunked dispatch, retries and progress tracking.",
        version="0.1.0",
        debug=settings.debug,
        redirect_slashes=False,
        lifespan=_lifespan(settings),
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    application.middleware("http")(_track_request)

    from extraction_orchestrator.orchestrator.router import router as sessions_router  # noqa: PLC0415

    application.include_router(
        sessions_router, prefix="/extraction-sessions", tags=["extraction-sessions"]
    )

    @application.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
