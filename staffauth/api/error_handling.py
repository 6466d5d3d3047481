from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from staffauth.api.schemas import Envelope, ErrorBody
from staffauth.logging import get_logger
from staffauth.service.errors import AccountLockedError, ServiceError
from staffauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    423: "account_locked",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain, storage and framework errors in the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        details = dict(exc.detail)
        headers = None
        if isinstance(exc, AccountLockedError) and exc.locked_until is not None:
            details["locked_until"] = exc.locked_until.isoformat()
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return _error_response(
            exc.status_code, exc.message, details, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "message": err.get("msg", "invalid value")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Envelope-shaped detail produced by routes._http_error
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                message = error_obj.get("message", "http error")
                code = error_obj.get("code")
                log_fn = logger.error if exc.status_code >= 500 else logger.warning
                log_fn(
                    "http_error",
                    path=request.url.path,
                    method=request.method,
                    status_code=exc.status_code,
                    error_code=code,
                    message=message,
                )
                return _error_response(
                    exc.status_code, message, error_obj.get("details"), code=code
                )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
