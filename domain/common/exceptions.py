"""Business exceptions shared by the domain, application and infrastructure layers.

The core layer maps them to HTTP; the domain never imports core.
"""
from __future__ import annotations

from typing import Any, Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """Base business exception. Carries a business code that core.exceptions maps to an HTTP status"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)

    def log_fields(self) -> dict[str, Any]:
        """Structured log fields (shared by the API handlers and the Celery tasks)"""
        fields: dict[str, Any] = {
            "code": int(self.code),
            "error_type": self.error_type,
            "message": self.message,
        }
        if self.field:
            fields["field"] = self.field
        if self.details:
            fields["details"] = self.details
        return fields


class DomainValidationException(BusinessException):
    """Input or amount breakdown violates a domain rule (HTTP 422)"""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )
