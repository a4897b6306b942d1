"""
Utils Package

Provides utility modules for:
- errors: Service error taxonomy and HTTP error responses
"""

from .errors import (
    LetterServiceError,
    NotFoundError,
    RowNotFound,
    ValidationError,
    DeliveryError,
    InternalError,
    ValidationErrorResponse,
    register_exception_handlers,
)

__all__ = [
    'LetterServiceError',
    'NotFoundError',
    'RowNotFound',
    'ValidationError',
    'DeliveryError',
    'InternalError',
    'ValidationErrorResponse',
    'register_exception_handlers',
]
