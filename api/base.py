"""Unified API response format."""

from typing import Any
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from auth.types import AuthResult, ErrorKind
from utils.timezone import now_utc


class APIError(BaseModel):
    """Error details in API response."""

    code: ErrorKind = Field(..., description="Machine-readable error kind")
    fields: dict[str, list[str]] | None = Field(
        default=None, description="Field-level detail, validation failures only"
    )
    retry_after: int | None = Field(default=None, alias="retryAfter", description="Seconds to wait")

    model_config = {"populate_by_name": True}


class APIMeta(BaseModel):
    """Metadata included in every API response."""

    timestamp: datetime = Field(..., description="Response timestamp (UTC)")
    request_id: str = Field(..., description="Unique request identifier for tracing")


class APIResponse(BaseModel):
    """
    Response body shared by every endpoint.

    success/statusCode/message/data is the client contract; error and meta
    are additive.
    """

    success: bool
    status_code: int = Field(..., alias="statusCode")
    message: str
    data: Any | None = None
    error: APIError | None = None
    meta: APIMeta

    model_config = {"populate_by_name": True}

    def body(self) -> dict:
        """JSON-ready dict using the contract's camelCase keys."""
        exclude = {"error"} if self.error is None else None
        return self.model_dump(mode="json", by_alias=True, exclude=exclude)


def _meta(request_id: str | None) -> APIMeta:
    return APIMeta(timestamp=now_utc(), request_id=request_id or str(uuid4()))


def success_response(
    data: Any = None,
    message: str = "OK",
    status_code: int = 200,
    request_id: str | None = None,
) -> APIResponse:
    """Create a success response."""
    return APIResponse(
        success=True,
        status_code=status_code,
        message=message,
        data=data,
        meta=_meta(request_id),
    )


def error_response(
    code: ErrorKind,
    message: str,
    status_code: int,
    fields: dict[str, list[str]] | None = None,
    retry_after: int | None = None,
    data: Any = None,
    request_id: str | None = None,
) -> APIResponse:
    """Create an error response."""
    return APIResponse(
        success=False,
        status_code=status_code,
        message=message,
        data=data,
        error=APIError(code=code, fields=fields, retry_after=retry_after),
        meta=_meta(request_id),
    )


def result_response(result: AuthResult, request_id: str | None = None) -> APIResponse:
    """Translate an orchestrator result into the response body."""
    if result.success:
        return success_response(result.data, result.message, result.status_code, request_id)
    return error_response(
        result.error or ErrorKind.INTERNAL_ERROR,
        result.message,
        result.status_code,
        fields=result.field_errors,
        retry_after=result.retry_after_seconds,
        data=result.data,
        request_id=request_id,
    )
