"""
Business code to HTTP status mapping and global exception handlers
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import traceback
import uuid
from sqlalchemy.exc import SQLAlchemyError
from starlette import status as http_status

from .response import error_response
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


_BUSINESS_STATUS = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,

    BusinessCode.BUSINESS_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.CONFLICT: http_status.HTTP_409_CONFLICT,

    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,

    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}

_PAYMENT_STATUS = {
    PaymentCode.PROVIDER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.SIGNATURE_ERROR: http_status.HTTP_401_UNAUTHORIZED,
    PaymentCode.TIMEOUT: http_status.HTTP_504_GATEWAY_TIMEOUT,
    PaymentCode.PROVIDER_REJECTED: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.PAYMENT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    PaymentCode.INVALID_TRANSITION: http_status.HTTP_409_CONFLICT,
    PaymentCode.REFERENCE_CONFLICT: http_status.HTTP_409_CONFLICT,
    PaymentCode.CONCURRENT_UPDATE: http_status.HTTP_409_CONFLICT,
    PaymentCode.SETTLEMENT_FAILED: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.INSUFFICIENT_BALANCE: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def business_code_to_http_status(code: int) -> int:
    """HTTP status for a business code (400 by default)."""
    if code in _PAYMENT_STATUS:
        return _PAYMENT_STATUS[code]
    return _BUSINESS_STATUS.get(code, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", None) or str(uuid.uuid4())


def register_exception_handlers(app: FastAPI):
    """
    Register the global exception handlers

    Args:
        app: the FastAPI application
    """

    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        """Business exceptions"""
        request_id = _request_id(request)
        status_code = business_code_to_http_status(exc.code)
        log = logger.warning if status_code < 500 else logger.error
        log("business_exception", request_id=request_id, **exc.log_fields())
        response = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=request_id,
        )
        return JSONResponse(status_code=status_code, content=response.model_dump(mode='json'))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Request validation errors"""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])
        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": errors},
            field=field,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode='json')
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """HTTP exceptions"""
        code_mapping = {
            401: BusinessCode.UNAUTHORIZED,
            403: BusinessCode.FORBIDDEN,
            404: BusinessCode.NOT_FOUND,
            409: BusinessCode.CONFLICT,
            500: BusinessCode.SYSTEM_ERROR,
            503: BusinessCode.SERVICE_UNAVAILABLE
        }
        response = error_response(
            code=code_mapping.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode='json'),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        """Database errors map to 503"""
        request_id = _request_id(request)
        logger.error("database_error", request_id=request_id, error=str(exc), exc_info=True)
        response = error_response(
            code=BusinessCode.DATABASE_ERROR,
            message="Database unavailable",
            error_type="DatabaseError",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode='json')
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Anything left uncaught"""
        request_id = _request_id(request)

        # detailed errors in debug only
        details = None
        if app.debug:
            details = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }

        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )

        logger.error(
            "unhandled_exception",
            request_id=request_id,
            error=str(exc),
            exc_info=True,
        )

        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode='json')
        )
