"""FastAPI application factory and ASGI entry point.

Usage::

    uvicorn bulk_scraper.api.main:app --reload
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response

from bulk_scraper.config.settings import get_settings
from bulk_scraper.core.logging_config import configure_logging

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def bind_request_context(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request id to the log context and log each request once.

    An incoming ``X-Request-ID`` is reused so ids can be followed across
    services; otherwise a new one is generated.  The id is echoed on the
    response.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request failed")
        raise
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

    log = logger.warning if response.status_code >= 400 else logger.info
    log("request completed", status_code=response.status_code, elapsed_ms=elapsed_ms)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def create_app() -> FastAPI:
    """Build the application.

    Kept separate from the module-level ``app`` so tests can build a fresh
    instance and override its dependencies.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Bulk URL-fetch orchestration: submit URLs, poll their outcomes.",
        version="0.1.0",
        debug=settings.debug,
    )
    application.middleware("http")(bind_request_context)

    from bulk_scraper.scraper.router import router as scraper_router  # noqa: PLC0415

    application.include_router(scraper_router, prefix="/scraper", tags=["scraper"])

    @application.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
