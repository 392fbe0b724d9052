"""
Error taxonomy and standardized error responses shared by all services
"""
from typing import Optional, Dict, Any
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    EMAIL_TAKEN = "EMAIL_TAKEN"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Ledger
    INVALID_AMOUNT = "INVALID_AMOUNT"
    SAME_WALLET = "SAME_WALLET"
    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"

    # Entities
    NOT_FOUND = "NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    CONTRACT_NOT_FOUND = "CONTRACT_NOT_FOUND"
    DISPUTE_NOT_FOUND = "DISPUTE_NOT_FOUND"
    OPEN_DISPUTE_EXISTS = "OPEN_DISPUTE_EXISTS"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    CONFLICT = "CONFLICT"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"

# Business logic errors map to HTTP status codes here; anything unlisted is a 400
BUSINESS_STATUS_CODES = {
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.INVALID_CREDENTIALS: 401,
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.USER_NOT_FOUND: 404,
    ErrorCodes.WALLET_NOT_FOUND: 404,
    ErrorCodes.CONTRACT_NOT_FOUND: 404,
    ErrorCodes.DISPUTE_NOT_FOUND: 404,
    ErrorCodes.EMAIL_TAKEN: 409,
    ErrorCodes.RATE_LIMIT_EXCEEDED: 429,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.CONFLICT: 409,
    ErrorCodes.STORE_UNAVAILABLE: 503,
}

class BusinessLogicError(Exception):
    """Base class for expected, caller-visible failures"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, code: str = None, field: str = None, context: Dict[str, Any] = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Base class for infrastructure failures"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str = None, original_error: Exception = None):
        self.code = code or self.code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class Unauthorized(BusinessLogicError):
    code = ErrorCodes.UNAUTHORIZED

class Forbidden(BusinessLogicError):
    code = ErrorCodes.FORBIDDEN

class NotFound(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND

class Conflict(ServiceError):
    """Transient store conflict; the whole atomic unit may be retried"""
    code = ErrorCodes.CONFLICT

class StoreUnavailable(ServiceError):
    code = ErrorCodes.STORE_UNAVAILABLE

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    headers: Dict[str, str] = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response),
        headers=headers,
    )

def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Expected failures: 4xx with the error's own code"""
    status_code = BUSINESS_STATUS_CODES.get(exc.code, 400)
    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": _trace_id(request),
        "field": exc.field,
        "context": exc.context,
    })
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=_trace_id(request),
        headers={"WWW-Authenticate": "Bearer"} if status_code == 401 else None,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Store and infrastructure failures; the cause is logged, never returned"""
    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": _trace_id(request),
        "original_error": repr(exc.original_error) if exc.original_error else None,
    })
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=SERVICE_STATUS_CODES.get(exc.code, 500),
        trace_id=_trace_id(request),
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Report the first failing field only
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", ()) if loc != "body")
    message = first_error.get("msg", "Validation error")
    logger.warning(f"Validation error on {field}: {message}", extra={"trace_id": _trace_id(request)})
    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Invalid value for '{field}': {message}",
        status_code=400,
        field=field or None,
        trace_id=_trace_id(request),
    )

HTTP_STATUS_CODES = {
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    405: ErrorCodes.VALIDATION_ERROR,
    429: ErrorCodes.RATE_LIMIT_EXCEEDED,
}

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Framework-raised errors such as unknown routes"""
    return create_error_response(
        error_code=HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR),
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=_trace_id(request),
        headers=getattr(exc, "headers", None),
    )

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc!r}", extra={
        "trace_id": _trace_id(request),
        "traceback": traceback.format_exc(),
    })
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=_trace_id(request),
    )

def add_error_handlers(app):
    """Install the standard error envelope on app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
