"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes, the billing error taxonomy and
global exception handlers.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class ValidationFailedError(AppException):
    """Raised when a request is well-formed but not acceptable."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_BAD_REQUEST_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


# Billing taxonomy

class RateNotConfiguredError(AppException):
    """Provider has no usable rate for the consultation type (treated as free)."""

    def __init__(self, provider_id: int, consultation_type: str):
        super().__init__(
            message=f"Provider {provider_id} has no {consultation_type} rate configured",
            error_code="ERR_BILLING_RATE",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"provider_id": provider_id, "type": consultation_type}
        )


class AlreadySettledError(AppException):
    """
    Settlement attempted for a consultation that already has a client payment.

    Carries the existing settlement so callers can return it unchanged.
    """

    def __init__(self, consultation_id: int, settlement: Any = None):
        self.settlement = settlement
        super().__init__(
            message=f"Consultation {consultation_id} is already settled",
            error_code="ERR_BILLING_SETTLED",
            status_code=status.HTTP_409_CONFLICT,
            details={"consultation_id": consultation_id}
        )


class InsufficientFundsError(AppException):
    """Wallet balance cannot cover the requested debit."""

    def __init__(self, required: Any, available: Any, message: str = None):
        super().__init__(
            message=message or f"Insufficient wallet balance: required {required}, available {available}",
            error_code="ERR_BILLING_FUNDS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": str(required), "available": str(available)}
        )


class IntegrityViolationError(AppException):
    """Ledger and consultation records disagree. Surfaced to operators."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_BILLING_INTEGRITY",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class StateTransitionRejectedError(AppException):
    """Attempted transition out of a terminal (or otherwise wrong) state."""

    def __init__(self, consultation_id: int, current_status: str, attempted: str):
        super().__init__(
            message=f"Consultation {consultation_id} is {current_status}; cannot {attempted}",
            error_code="ERR_STATE_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"consultation_id": consultation_id, "status": current_status, "attempted": attempted}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
