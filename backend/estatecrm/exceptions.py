"""Error envelope for the REST surface (organizations, properties, teams).

Every error answers with ``{error, code, message, details, request_id}``.
The ``code`` is stable so the frontend can branch on it; a 402 with
``RATE_004`` opens the subscription dialog.

The Stripe and WhatsApp webhook handlers answer with the wire shapes the
providers and the checkout client expect and do not use this envelope.

Usage:
    from estatecrm.exceptions import NotFoundError

    raise NotFoundError(
        message="Property not found",
        details={"property_id": str(property_id)},
    )
"""

from enum import Enum
from typing import Any, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
import structlog

logger = structlog.get_logger()

REQUEST_ID_HEADERS = ("X-Request-ID", "X-Correlation-ID")


class ErrorCode(str, Enum):
    """Standardized error codes for API responses.

    These codes allow frontend applications to programmatically
    handle specific error conditions.
    """

    # Authentication & Authorization (1xxx)
    AUTHENTICATION_REQUIRED = "AUTH_001"
    TOKEN_INVALID = "AUTH_004"
    INSUFFICIENT_PERMISSIONS = "AUTH_005"

    # Validation Errors (2xxx)
    VALIDATION_ERROR = "VAL_001"

    # Resource Errors (3xxx)
    NOT_FOUND = "RES_001"
    ALREADY_EXISTS = "RES_002"

    # Billing (4xxx)
    SUBSCRIPTION_REQUIRED = "RATE_004"

    # Server Errors (9xxx)
    INTERNAL_ERROR = "SRV_001"


class ErrorResponse(BaseModel):
    """Standardized error response model."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": True,
                "code": "RES_001",
                "message": "Property not found",
                "details": {"property_id": "123e4567-e89b-12d3-a456-426614174000"},
                "request_id": "req_abc123",
            }
        }
    )

    error: bool = True
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    request_id: Optional[str] = None


class APIError(HTTPException):
    """Base exception for the REST error envelope.

    Args:
        status_code: HTTP status code
        code: ErrorCode enum value
        message: Human-readable error message
        details: Additional context (must be JSON-serializable)
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(status_code=status_code, detail=self.to_content())

    def to_content(self, request_id: Optional[str] = None) -> dict[str, Any]:
        content: dict[str, Any] = {
            "error": True,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }
        if request_id:
            content["request_id"] = request_id
        return content


class NotFoundError(APIError):
    """Resource not found (404)."""

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            message=message,
            details=details,
        )


class ValidationError(APIError):
    """Request validation failed (400)."""

    def __init__(
        self,
        message: str = "Validation error",
        details: Optional[dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        if field and details is None:
            details = {"field": field}
        elif field and details is not None:
            details["field"] = field

        super().__init__(
            status_code=400,
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
        )


class AuthenticationError(APIError):
    """Authentication required or failed (401)."""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.AUTHENTICATION_REQUIRED,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=401,
            code=code,
            message=message,
            details=details,
        )


class AuthorizationError(APIError):
    """Caller's role does not allow the action (403)."""

    def __init__(
        self,
        message: str = "Insufficient permissions",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=403,
            code=ErrorCode.INSUFFICIENT_PERMISSIONS,
            message=message,
            details=details,
        )


class AlreadyExistsError(APIError):
    """Resource already exists (409)."""

    def __init__(
        self,
        message: str = "Resource already exists",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=409,
            code=ErrorCode.ALREADY_EXISTS,
            message=message,
            details=details,
        )


class SubscriptionRequiredError(APIError):
    """Active subscription required (402).

    Clients react to this code by opening the subscription dialog.
    """

    def __init__(
        self,
        message: str = "Active subscription required",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=402,
            code=ErrorCode.SUBSCRIPTION_REQUIRED,
            message=message,
            details=details,
        )


# Exception Handlers for FastAPI


def get_request_id(request: Request) -> Optional[str]:
    """Extract request ID from headers or state."""
    for header in REQUEST_ID_HEADERS:
        if header in request.headers:
            return request.headers[header]
    return getattr(request.state, "request_id", None)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions with consistent response format."""
    request_id = get_request_id(request)

    if exc.status_code >= 500:
        log = logger.error
    elif exc.code is ErrorCode.SUBSCRIPTION_REQUIRED:
        # Routine for lapsed tenants
        log = logger.info
    else:
        log = logger.warning

    log(
        "API error",
        error_code=exc.code.value,
        status_code=exc.status_code,
        path=request.url.path,
        message=exc.message,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_content(request_id),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle standard HTTPException with consistent response format."""
    request_id = get_request_id(request)

    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = dict(exc.detail)
    else:
        content = {
            "error": True,
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": str(exc.detail) if exc.detail else "An error occurred",
            "details": {},
        }

    if request_id:
        content["request_id"] = request_id

    logger.warning(
        "HTTP Exception",
        status_code=exc.status_code,
        message=content.get("message"),
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with logging and safe response."""
    request_id = get_request_id(request)

    logger.exception(
        "Unhandled exception",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    content = {
        "error": True,
        "code": ErrorCode.INTERNAL_ERROR.value,
        "message": "An unexpected error occurred",
        "details": {},
    }

    if request_id:
        content["request_id"] = request_id

    return JSONResponse(
        status_code=500,
        content=content,
    )


def register_exception_handlers(app) -> None:
    """Register all exception handlers with a FastAPI app."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
