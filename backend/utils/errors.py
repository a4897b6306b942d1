"""
Error Taxonomy and HTTP Mapping

Service-level exceptions raised by the letter pipeline, and the FastAPI
handlers that turn them into structured responses.

Error Response Format:
{
    "error": "not_found" | "validation_error" | "internal_error",
    "parameter": "employeeId" | null,
    "message": "Employee E100 not found"
}

DeliveryError is recorded on the email job by the dispatch engine and is
never surfaced through HTTP.
"""

import logging
from typing import Optional, Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LetterServiceError(Exception):
    """Base exception for the letter pipeline"""
    error_code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.parameter = parameter


class NotFoundError(LetterServiceError):
    """Template, employee, asset or job is absent"""
    error_code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class RowNotFound(NotFoundError):
    """Employee row missing from a letter type's dynamic table"""
    pass


class ValidationError(LetterServiceError):
    """Malformed request or disallowed operation"""
    error_code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class DeliveryError(LetterServiceError):
    """Provider rejected the message or did not answer in time"""
    error_code = "delivery_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, capacity_exceeded: bool = False):
        super().__init__(message)
        self.capacity_exceeded = capacity_exceeded


class InternalError(LetterServiceError):
    """Unexpected fault during rendering or persistence"""
    pass


class ValidationErrorResponse:
    """Structured error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def from_exception(exc: LetterServiceError) -> dict:
        return {
            "error": exc.error_code,
            "parameter": exc.parameter,
            "message": exc.message,
        }


async def letter_service_error_handler(request: Request, exc: LetterServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": ValidationErrorResponse.from_exception(exc)},
    )


def register_exception_handlers(app: FastAPI):
    """Map the taxonomy onto HTTP status codes."""
    app.add_exception_handler(LetterServiceError, letter_service_error_handler)
