from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from courier.apps.api.errors import (
    courier_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from courier.apps.api.response import API_VERSION
from courier.apps.api.routes.cron import router as cron_router
from courier.apps.api.routes.health import router as health_router
from courier.apps.api.routes.queue_admin import router as queue_admin_router
from courier.core.config import get_settings
from courier.core.errors import CourierError
from courier.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=f"{get_settings().app_name} API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "api_request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(CourierError, courier_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Operator tooling for inspecting and steering the delivery queue.
    app.include_router(queue_admin_router, prefix=f"/{API_VERSION}")
    # Scheduler trigger for hosts without a long-running worker.
    app.include_router(cron_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
