"""
Access log middleware
Logs status code and duration of every request. Bodies are never logged
(webhooks carry signatures and phone numbers).
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import get_logger


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    # not logged
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        logger.info("request_started", query_params=dict(request.query_params))
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - start_time,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        status_code = response.status_code
        if status_code < 400:
            logger.info("request_completed", status_code=status_code, duration=duration)
        elif status_code < 500:
            logger.warning("request_client_error", status_code=status_code, duration=duration)
        else:
            logger.error("request_server_error", status_code=status_code, duration=duration)
        return response
