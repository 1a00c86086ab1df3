from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from forumai.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from forumai.apps.api.response import API_VERSION
from forumai.apps.api.routes.admin import router as admin_router
from forumai.core.config import get_settings
from forumai.core.logging import configure_logging
from forumai.persistence.db import init_models


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    await init_models()
    yield


async def _request_context(request: Request, call_next):
    # Admin UI actions and wake-up calls share one request id across logs and the response.
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    started = time.monotonic()
    response = await call_next(request)
    logger.info(
        "http_request method=%s path=%s status=%s latency_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        (time.monotonic() - started) * 1000.0,
    )
    response.headers.setdefault("X-Request-Id", request_id)
    return response


def create_app(*, init_db: bool = True) -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=_lifespan if init_db else None)
    app.middleware("http")(_request_context)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
