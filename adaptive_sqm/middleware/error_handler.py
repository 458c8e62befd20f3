"""Uniform error responses across all routes."""

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.errors import (
    DeploymentRefused,
    DeploymentRejected,
    InvalidShapingParameter,
    LinkConfigurationError,
    LinkNotFound,
    MeasurementUnavailable,
    RemoteUnreachable,
    SqmError,
)
from ..utils.logging import get_logger

logger = get_logger("middleware.error_handler")

# Most specific first
_SQM_ERROR_STATUS = (
    (LinkNotFound, 404),
    (LinkConfigurationError, 400),
    (InvalidShapingParameter, 400),
    (DeploymentRefused, 409),
    (DeploymentRejected, 502),
    (RemoteUnreachable, 503),
    (MeasurementUnavailable, 503),
)


def _error_body(request: Request, status_code: int, detail, **extra) -> dict:
    return {
        "error": True,
        "status_code": status_code,
        "detail": detail,
        **extra,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(request.state, "request_id", None),
    }


def status_for(exc: SqmError) -> int:
    for cls, code in _SQM_ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


def register_error_handlers(app: FastAPI) -> None:
    """Register standard error handlers on the app."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc.status_code, exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_body(request, 422, "Validation error", errors=jsonable_errors(exc)),
        )

    @app.exception_handler(SqmError)
    async def sqm_exception_handler(request: Request, exc: SqmError):
        code = status_for(exc)
        # KeyError subclasses wrap their message in quotes
        detail = exc.args[0] if exc.args else str(exc)
        logger.warning("request_failed", error_type=type(exc).__name__, error=str(detail),
                       status_code=code, path=str(request.url.path))
        return JSONResponse(status_code=code, content=_error_body(request, code, detail))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            "unhandled_exception",
            error=str(exc),
            request_id=request_id,
            path=str(request.url.path),
            exc_info=True,
        )
        return JSONResponse(status_code=500, content=_error_body(request, 500, "Internal server error"))


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # pydantic puts the raw exception in ctx for custom validators
    errors = []
    for err in exc.errors():
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(err)
    return errors
