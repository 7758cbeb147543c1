"""
Centralized error handling and sanitization.

Provides:
- Standard error types for the arena engine
- Error sanitization for production environments
- Consistent HTTP error construction for the API layer
"""

import logging
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, status

from .config import get_settings

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for the application"""

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"

    # Decision pipeline
    DECISION_PARSE_FAILED = "DECISION_PARSE_FAILED"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    DATA_FETCH_FAILED = "DATA_FETCH_FAILED"

    # Run lifecycle
    RUN_FAILED = "RUN_FAILED"
    RUN_STATE_ERROR = "RUN_STATE_ERROR"
    TRADE_STATE_ERROR = "TRADE_STATE_ERROR"

    # External services
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """
    Base application error with structured information.

    Supports automatic sanitization for production environments.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        """
        Create an application error.

        Args:
            code: Error code enum for machine-readable identification
            message: User-friendly error message (safe to expose)
            status_code: HTTP status code
            details: Additional details (sanitized in production)
            internal_message: Detailed message for logging only (never exposed)
        """
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(message)


class DataFetchError(AppError):
    """No price could be resolved for the cycle; the cycle cannot run."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            ErrorCode.DATA_FETCH_FAILED,
            message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )


class ExecutionError(AppError):
    """Unexpected failure while executing or settling a trade."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.EXECUTION_FAILED, message, details=details)


class RunStateError(AppError):
    """Illegal run status transition (terminal statuses are one-way)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            ErrorCode.RUN_STATE_ERROR,
            message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class InvalidRunError(AppError):
    """Run parameters that cannot produce a ranked result."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            ErrorCode.INVALID_INPUT,
            message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class TradeStateError(AppError):
    """A trade already in a terminal status was written again."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.TRADE_STATE_ERROR, message, details=details)


class NotFoundError(AppError):
    """Entity lookup failed."""

    entity = "Resource"

    def __init__(self, entity_id: Any):
        super().__init__(
            ErrorCode.NOT_FOUND,
            f"{self.entity} {entity_id} not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"id": str(entity_id)},
        )


class AgentNotFoundError(NotFoundError):
    entity = "Agent"


class LedgerNotFoundError(NotFoundError):
    entity = "Ledger"


class RunNotFoundError(NotFoundError):
    entity = "Run"


def sanitize_error_message(
    error: Exception,
    user_message: str = "An unexpected error occurred",
    include_type: bool = False,
) -> str:
    """
    Sanitize an error message for client response.

    In production: Returns generic user message
    In development: Returns detailed error information
    """
    settings = get_settings()

    if settings.environment == "production":
        return user_message

    error_str = str(error)
    if include_type:
        return f"{type(error).__name__}: {error_str}"
    return error_str


def create_http_exception(
    code: ErrorCode,
    user_message: str,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    internal_error: Optional[Exception] = None,
    log_error: bool = True,
) -> HTTPException:
    """
    Create an HTTPException with sanitized message.

    Args:
        code: Error code for identification
        user_message: User-friendly message (shown in production)
        status_code: HTTP status code
        internal_error: Optional internal exception for logging
        log_error: Whether to log the error

    Returns:
        HTTPException ready to raise
    """
    settings = get_settings()

    if log_error and internal_error:
        logger.error(
            f"[{code.value}] {user_message}: {internal_error}",
            exc_info=True,
        )
    elif log_error:
        logger.error(f"[{code.value}] {user_message}")

    if settings.environment == "production" or internal_error is None:
        detail = user_message
    else:
        detail = f"{user_message}: {internal_error}"

    return HTTPException(
        status_code=status_code,
        detail=detail,
    )


# ==================== Pre-built HTTP Exceptions ====================


def app_error_to_http(error: AppError) -> HTTPException:
    """Map a domain error onto its HTTP status without logging a traceback."""
    return create_http_exception(
        code=error.code,
        user_message=error.message,
        status_code=error.status_code,
        log_error=error.status_code >= 500,
    )


def not_found_error(entity: str, entity_id: Any) -> HTTPException:
    """Create standardized 404 error"""
    return create_http_exception(
        code=ErrorCode.NOT_FOUND,
        user_message=f"{entity} {entity_id} not found",
        status_code=status.HTTP_404_NOT_FOUND,
        log_error=False,
    )


def internal_error(error: Exception, context: str = "") -> HTTPException:
    """Create standardized internal error"""
    ctx = f" ({context})" if context else ""
    return create_http_exception(
        code=ErrorCode.INTERNAL_ERROR,
        user_message=f"An internal error occurred{ctx}. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        internal_error=error,
    )
