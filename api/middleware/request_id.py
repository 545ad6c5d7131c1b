"""
Request ID middleware
Generates or forwards a trace id and hands it to logging through contextvars
"""
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID tracing middleware

    Each request starts from a clean structlog context bound to request_id, client_ip,
    method and path. The request_id is echoed in the response headers.
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = get_client_ip(request)

        request.state.request_id = request_id
        request_id_var.set(request_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_client_ip(request: Request) -> str:
    """Prefer proxy headers (first X-Forwarded-For address, then X-Real-IP)"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def get_request_id() -> Optional[str]:
    """request_id of the current request; None outside a request"""
    return request_id_var.get()
