"""
Unified response envelope
"""
from typing import Any, Optional, Generic, TypeVar
from pydantic import BaseModel, Field, field_serializer
from datetime import datetime, timezone
from shared.codes import BusinessCode


T = TypeVar("T")


class ErrorDetail(BaseModel):
    """Error detail"""
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer('timestamp')
    def serialize_timestamp(self, timestamp: datetime) -> str:
        """Serialize the timestamp as UTC ISO 8601 ending in Z"""
        ts = timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        else:
            ts = ts.astimezone(timezone.utc)
        return ts.isoformat().replace("+00:00", "Z")


class Response(BaseModel, Generic[T]):
    """Response envelope"""
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


def success_response(
    data: Any = None,
    message: str = "Success",
    code: int = BusinessCode.SUCCESS
) -> Response:
    """Build a success response"""
    return Response(code=code, message=message, data=data, error=None)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None
) -> Response:
    """
    Build an error response

    Args:
        code: business code
        message: error message
        error_type: error type
        details: error details
        field: offending field
        request_id: request id
    """
    return Response(
        code=code,
        message=message,
        data=None,
        error=ErrorDetail(
            type=error_type,
            details=details,
            field=field,
            request_id=request_id
        )
    )


def acknowledgement(outcome: str, message: str) -> Response:
    """
    Webhook acknowledgement (HTTP 200 and code 0)

    Providers keep re-sending a notification until it is acknowledged.
    The actual result goes in data.outcome.
    """
    return success_response(data={"outcome": outcome}, message=message)
