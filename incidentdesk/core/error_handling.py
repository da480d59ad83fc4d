"""Request-id middleware, request logging, and JSON error envelopes."""

from __future__ import annotations

from collections.abc import Mapping
from time import perf_counter
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from incidentdesk.core.config import settings
from incidentdesk.core.logging import get_logger
from incidentdesk.services.results import ErrorKind

if TYPE_CHECKING:
    from fastapi import FastAPI
    from starlette.requests import Request
    from starlette.responses import Response
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
_HEALTH_PATHS = frozenset({"/health", "/healthz", "/readyz"})

ERROR_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.TERMINAL_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.CONFLICT_DETECTED: status.HTTP_409_CONFLICT,
    ErrorKind.PERSISTENCE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_DEFAULT_DETAILS: dict[ErrorKind, str] = {
    ErrorKind.FORBIDDEN: "Forbidden",
    ErrorKind.TERMINAL_STATE: "Incident is closed.",
    ErrorKind.VALIDATION_FAILED: "Validation failed.",
    ErrorKind.CONFLICT_DETECTED: "Concurrent modification; refresh and retry.",
    ErrorKind.PERSISTENCE_UNAVAILABLE: "Storage temporarily unavailable; retry later.",
}


class MutationRejectedError(Exception):
    """Raised by API routes to surface a rejected mutation as an HTTP error."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        super().__init__(detail or _DEFAULT_DETAILS.get(kind, kind.value))
        self.kind = kind
        self.detail = detail or _DEFAULT_DETAILS.get(kind, kind.value)

    @property
    def status_code(self) -> int:
        return ERROR_KIND_STATUS.get(self.kind, status.HTTP_400_BAD_REQUEST)


class RequestIdMiddleware:
    """Assign a request id, echo it as a header, and log request timing."""

    def __init__(self, app: ASGIApp, *, header_name: str = REQUEST_ID_HEADER) -> None:
        self._app = app
        self._header_name = header_name
        self._header_name_bytes = header_name.lower().encode("latin-1")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        request_id = self._get_or_create_request_id(scope)
        scope.setdefault("state", {})["request_id"] = request_id
        path = str(scope.get("path", ""))
        method = str(scope.get("method", ""))
        should_log = settings.request_log_include_health or path not in _HEALTH_PATHS
        started_at = perf_counter()
        status_code = 500

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message.get("status", 500))
                headers = [
                    (key, value)
                    for key, value in message.get("headers", [])
                    if key.lower() != self._header_name_bytes
                ]
                headers.append((self._header_name_bytes, request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        try:
            await self._app(scope, receive, send_with_request_id)
        finally:
            if should_log:
                self._log_request(
                    method=method,
                    path=path,
                    status_code=status_code,
                    request_id=request_id,
                    duration_ms=round((perf_counter() - started_at) * 1000, 2),
                )

    def _log_request(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        request_id: str,
        duration_ms: float,
    ) -> None:
        extra = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "request_id": request_id,
            "duration_ms": duration_ms,
        }
        logger.info("http.request.complete", extra=extra)
        slow_ms = settings.request_log_slow_ms
        if slow_ms > 0 and duration_ms >= slow_ms:
            logger.warning("http.request.slow", extra={**extra, "slow_threshold_ms": slow_ms})

    def _get_or_create_request_id(self, scope: Scope) -> str:
        for key, raw_value in scope.get("headers", []):
            if key.lower() != self._header_name_bytes:
                continue
            value = raw_value.decode("latin-1").strip()
            if value:
                return value
        return str(uuid4())


def install_error_handling(app: FastAPI) -> None:
    """Register the request-id middleware and the exception handlers."""
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(MutationRejectedError, _mutation_rejected_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _error_payload(
    *,
    detail: object,
    request_id: str | None,
    code: str | None = None,
    retryable: bool | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail}
    if code is not None:
        payload["code"] = code
    if retryable is not None:
        payload["retryable"] = retryable
    if request_id:
        payload["request_id"] = request_id
    return payload


def _json_safe(value: object) -> object:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _with_request_id_header(response: Response, request_id: str | None) -> Response:
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> Response:
    if not isinstance(exc, RequestValidationError):
        raise TypeError("Expected RequestValidationError")
    request_id = _get_request_id(request)
    logger.info(
        "http.validation_error",
        extra={"path": request.url.path, "request_id": request_id, "errors": len(exc.errors())},
    )
    response = JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_payload(
            detail=jsonable_encoder(_json_safe(exc.errors())),
            request_id=request_id,
        ),
    )
    return _with_request_id_header(response, request_id)


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> Response:
    if not isinstance(exc, ResponseValidationError):
        raise TypeError("Expected ResponseValidationError")
    request_id = _get_request_id(request)
    logger.error(
        "http.response_validation_error",
        extra={"path": request.url.path, "request_id": request_id, "errors": len(exc.errors())},
    )
    response = JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_payload(detail="Internal Server Error", request_id=request_id),
    )
    return _with_request_id_header(response, request_id)


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> Response:
    if not isinstance(exc, StarletteHTTPException):
        raise TypeError("Expected StarletteHTTPException")
    request_id = _get_request_id(request)
    response = JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(detail=_json_safe(exc.detail), request_id=request_id),
        headers=exc.headers,
    )
    return _with_request_id_header(response, request_id)


async def _mutation_rejected_exception_handler(
    request: Request,
    exc: Exception,
) -> Response:
    if not isinstance(exc, MutationRejectedError):
        raise TypeError("Expected MutationRejectedError")
    request_id = _get_request_id(request)
    response = JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(
            detail=exc.detail,
            request_id=request_id,
            code=exc.kind.value,
            retryable=exc.kind.retryable,
        ),
    )
    return _with_request_id_header(response, request_id)


async def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    request_id = _get_request_id(request)
    logger.error(
        "http.unhandled_exception",
        extra={"path": request.url.path, "request_id": request_id},
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    response = JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_payload(detail="Internal Server Error", request_id=request_id),
    )
    return _with_request_id_header(response, request_id)
