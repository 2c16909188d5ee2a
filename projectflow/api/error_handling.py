from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from projectflow.api.schemas import Envelope, ErrorBody, OAuthErrorBody
from projectflow.logging import get_logger
from projectflow.service.errors import ServiceError
from projectflow.storage.errors import ConstraintViolation, StorageError

logger = get_logger(__name__)

OAUTH_PATHS = frozenset({"/authorize", "/token", "/revoke", "/register"})

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _is_oauth_path(request: Request) -> bool:
    return request.url.path in OAUTH_PATHS


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def oauth_error_response(status_code: int, error_code: str, message: str) -> JSONResponse:
    body = OAuthErrorBody.from_code(error_code, message)
    headers = dict(NO_STORE_HEADERS)
    if status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{body.error}"'
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _render(
    request: Request,
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    if _is_oauth_path(request):
        return oauth_error_response(status_code, error_code, message)
    return _error_response(status_code, message, details, code=error_code)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for domain and storage errors.

    OAuth endpoints answer in the RFC 6749 ``{error, error_description}``
    shape; every other path uses the envelope.
    """

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _render(request, 409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _render(request, 500, "temporary storage failure", code="server_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        # 5xx messages may carry internals; the log keeps them
        message = exc.message if exc.status_code < 500 else "internal server error"
        response = _render(request, exc.status_code, message, exc.detail, code=error_code)
        retry_after = exc.detail.get("retry_after") if exc.detail else None
        if retry_after is not None:
            response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        missing = ", ".join(e["field"].rsplit(".", 1)[-1] for e in errors)
        return _render(request, 400, f"invalid or missing parameters: {missing}", errors)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _render(request, exc.status_code, message, details)
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _render(request, 500, "internal server error", code="server_error")
