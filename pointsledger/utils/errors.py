"""
Standardized error response utilities for the points API.

Provides consistent error response format across all endpoints:
{
    "error": {
        "message": "User-friendly error message",
        "code": "ERROR_CODE"
    }
}

Usage:
    from pointsledger.utils.errors import error_response, ErrorCode

    return error_response("Insufficient points", ErrorCode.INSUFFICIENT_POINTS, 422)
"""
import logging
from enum import Enum
from flask import jsonify
from typing import Optional

from .exceptions import (
    LedgerError,
    InvalidInputError,
    InsufficientPointsError,
    BusyError,
    StorageFailureError,
)

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying a Busy response
RETRY_AFTER_SECONDS = 1


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Validation Errors (400)
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_CATEGORY = "INVALID_CATEGORY"

    # Business Logic Errors (422)
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"

    # Retryable (503)
    BUSY = "BUSY"
    STORAGE_FAILURE = "STORAGE_FAILURE"

    # Not Found (404)
    NOT_FOUND = "NOT_FOUND"

    # Server Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_response(
    message: str,
    code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    status_code: int = 500,
    log_error: bool = True,
    details: Optional[dict] = None
) -> tuple:
    """
    Create a standardized error response.

    Args:
        message: User-friendly error message
        code: Error code from ErrorCode enum
        status_code: HTTP status code
        log_error: Whether to log the error (default True for 500s)
        details: Optional additional details (only logged, not returned to user)

    Returns:
        Tuple of (response, status_code) for Flask
    """
    if log_error and status_code >= 500:
        logger.error(f"API Error [{code}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API Error [{code}]: {message}", extra={"details": details})

    response = {
        "error": {
            "message": message,
            "code": code.value if isinstance(code, ErrorCode) else code
        }
    }

    return jsonify(response), status_code


def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> tuple:
    """400 Bad Request error."""
    return error_response(message, code, 400, log_error=False)


def internal_error(message: str = "An unexpected error occurred", details: Optional[dict] = None) -> tuple:
    """500 Internal Server Error."""
    return error_response(message, ErrorCode.INTERNAL_ERROR, 500, log_error=True, details=details)


def ledger_error_response(error: LedgerError) -> tuple:
    """
    Map a ledger exception to its user-facing response.

    Invalid input and insufficient points are rejected requests. Busy and
    storage failures are retry-later responses that never reveal ledger state.
    """
    if isinstance(error, InvalidInputError):
        return error_response(error.message, error.code, 400, log_error=False)

    if isinstance(error, InsufficientPointsError):
        return error_response(error.message, ErrorCode.INSUFFICIENT_POINTS, 422, log_error=False)

    if isinstance(error, BusyError):
        response, status = error_response(
            "Points ledger is busy, please retry",
            ErrorCode.BUSY,
            503,
            log_error=True
        )
        response.headers['Retry-After'] = str(RETRY_AFTER_SECONDS)
        return response, status

    if isinstance(error, StorageFailureError):
        return error_response(
            "Points ledger is temporarily unavailable, please retry later",
            ErrorCode.STORAGE_FAILURE,
            503,
            details={'error': error.message}
        )

    return internal_error(details={'error': error.message, 'code': error.code})
