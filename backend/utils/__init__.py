"""
Utils Package

Provides utility modules for:
- validation_errors: Structured error bodies for validation and personnel failures
"""

from .validation_errors import (
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    http_error_for,
    validate_required_id,
)

__all__ = [
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'http_error_for',
    'validate_required_id',
]
