from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from sharegate.logging import get_logger
from sharegate.service import emitter
from sharegate.service.errors import CodedError
from sharegate.service.notifier import ClientInfo

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "UNPROCESSABLE",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=request.client.host if request.client else None,
        origin=request.headers.get("origin"),
        user_agent=request.headers.get("user-agent"),
        token=request.headers.get("authorization"),
    )


def _notify(request: Request, exc: BaseException) -> None:
    from sharegate.service.runtime import get_runtime

    try:
        notifier = get_runtime().notifier
    except Exception as runtime_exc:
        logger.warning("error_notification_unavailable", error=str(runtime_exc))
        return
    notifier.notify(
        exc.__cause__ or exc,
        endpoint=request.url.path,
        method=request.method,
        payload=getattr(request.state, "parsed_body", None),
        client=client_info(request),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure as the broker's error envelope."""

    @app.exception_handler(CodedError)
    async def handle_coded_error(request: Request, exc: CodedError) -> JSONResponse:
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "coded_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        _notify(request, exc)
        return emitter.http_error(exc.status_code, exc.message, exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        _notify(request, exc)
        return emitter.http_error(
            exc.status_code, message, _error_code_for_status(exc.status_code)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        _notify(request, exc)
        return emitter.http_error(500, "Internal server error", "INTERNAL_ERROR")
