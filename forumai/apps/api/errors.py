from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from forumai.apps.api.response import error_response, success_response
from forumai.services.admin_ops import OperationResult


logger = logging.getLogger(__name__)


# Operation error codes to HTTP statuses; anything unlisted is a 400.
OPERATION_STATUS_CODES: dict[str, int] = {
    "validation_error": 422,
    "insufficient_credits": 402,
    "auth_error": 401,
    "transport_error": 502,
    "task_run_failed": 502,
    "queue_busy": 409,
    "illegal_transition": 409,
    "duplicate_content": 409,
    "service_unavailable": 503,
}

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation_error",
    500: "internal_error",
}


def operation_response(request: Request, result: OperationResult) -> JSONResponse:
    if result.ok:
        return JSONResponse(content=jsonable_encoder(success_response(request=request, data=result.data)))
    assert result.error is not None
    payload = error_response(
        request=request,
        code=result.error.code,
        message=result.error.message,
        details=result.error.details,
        data=result.data,
    )
    status_code = OPERATION_STATUS_CODES.get(result.error.code, 400)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    if isinstance(detail, dict):
        return str(detail.get("code") or _DEFAULT_ERROR_CODES.get(status_code, "error")), str(
            detail.get("message") or "Request failed"
        )
    if isinstance(detail, str):
        return _DEFAULT_ERROR_CODES.get(status_code, "error"), detail
    return _DEFAULT_ERROR_CODES.get(status_code, "error"), "Request failed"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return await http_exception_handler(request, HTTPException(exc.status_code, exc.detail, exc.headers))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="request_validation_error",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("http_unhandled_error path=%s", request.url.path, exc_info=exc)
    # Never leak stack traces to the admin UI.
    payload = error_response(request=request, code="internal_error", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
