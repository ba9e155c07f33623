"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from api.base import error_response
from auth.types import ErrorKind

logger = logging.getLogger(__name__)

_STATUS_KINDS = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    429: ErrorKind.RATE_LIMITED,
}


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields: dict[str, list[str]] = {}
        for item in exc.errors():
            # Drop the leading "body"/"query" segment
            loc = [str(part) for part in item["loc"][1:]] or [str(item["loc"][0])]
            fields.setdefault(".".join(loc), []).append(item["msg"])
        return JSONResponse(
            status_code=422,
            content=error_response(
                ErrorKind.VALIDATION_ERROR,
                "Invalid data received!",
                422,
                fields=fields,
                request_id=_request_id(request),
            ).body(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        kind = _STATUS_KINDS.get(exc.status_code, ErrorKind.BAD_REQUEST)
        return JSONResponse(
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
            content=error_response(
                kind, str(exc.detail), exc.status_code, request_id=_request_id(request)
            ).body(),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorKind.INTERNAL_ERROR,
                "Something went wrong. Please try again.",
                500,
                request_id=_request_id(request),
            ).body(),
        )
