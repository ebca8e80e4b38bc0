"""Exception types surfaced to panel users and their JSON rendering."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger("panel.exceptions")

NOT_FOUND_DETAIL = "The requested resource could not be found on the server."
ACCESS_DENIED_DETAIL = "This action is unauthorized."
_UNPROCESSABLE = 422


class DisplayException(Exception):
    """An error whose message is safe to show to the requesting user."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def code(self) -> str:
        return type(self).__name__


class NoViableNodeException(DisplayException):
    """Raised when no node can accept a new server."""


class NoViableAllocationException(DisplayException):
    """Raised when a node has no free allocations left for a server."""


class DaemonConnectionException(DisplayException):
    """Raised when the node agent cannot be reached or rejects a request."""

    status_code = status.HTTP_502_BAD_GATEWAY


_HTTP_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: ("BadRequestHttpException", None),
    status.HTTP_401_UNAUTHORIZED: ("UnauthorizedHttpException", None),
    status.HTTP_403_FORBIDDEN: ("AccessDeniedHttpException", ACCESS_DENIED_DETAIL),
    status.HTTP_404_NOT_FOUND: ("NotFoundHttpException", NOT_FOUND_DETAIL),
    status.HTTP_405_METHOD_NOT_ALLOWED: ("MethodNotAllowedHttpException", None),
}


def error_entry(code: str, status_code: int, detail: str, meta: Optional[Dict[str, str]] = None) -> Dict[str, object]:
    entry: Dict[str, object] = {"code": code, "status": str(status_code), "detail": detail}
    if meta:
        entry["meta"] = meta
    return entry


def error_response(errors: List[Dict[str, object]], status_code: int, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errors": errors}, headers=headers)


def _field_name(location: tuple) -> str:
    parts = [str(part) for part in location if part not in ("body", "query", "path")]
    return ".".join(parts) or "request"


def register_exception_handlers(app: FastAPI) -> None:
    """Render every API error as ``{"errors": [{code, status, detail}]}``."""

    @app.exception_handler(DisplayException)
    async def handle_display_exception(request: Request, exc: DisplayException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s while handling %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return error_response([error_entry(exc.code, exc.status_code, exc.message)], exc.status_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        code, default_detail = _HTTP_ERROR_CODES.get(exc.status_code, ("HttpException", None))
        detail = default_detail or (exc.detail if isinstance(exc.detail, str) else "An unexpected error was encountered.")
        return error_response(
            [error_entry(code, exc.status_code, detail)],
            exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for item in exc.errors():
            field = _field_name(tuple(item.get("loc", ())))
            message = str(item.get("msg", "is invalid"))
            errors.append(
                error_entry(
                    "ValidationException",
                    _UNPROCESSABLE,
                    f"The {field} field is invalid: {message}",
                    meta={"source_field": field, "rule": str(item.get("type", "invalid"))},
                )
            )
        return error_response(errors, _UNPROCESSABLE)


__all__ = [
    "ACCESS_DENIED_DETAIL",
    "DaemonConnectionException",
    "DisplayException",
    "NOT_FOUND_DETAIL",
    "NoViableAllocationException",
    "NoViableNodeException",
    "error_entry",
    "error_response",
    "register_exception_handlers",
]
