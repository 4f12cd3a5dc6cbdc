"""
Structured Error Utilities

Provides standardized error responses for validation failures and personnel
errors. Helps the UI tell a stale reference or a conflict apart from a
connectivity issue.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error"
             | "conflict" | "duplicate_username" | "not_found" | "network_error" | ...,
    "parameter": "user_id",
    "message": "user_id is required",
    "state": {...}          # only after a failed mutation
}
"""

from fastapi import HTTPException, status
from typing import Optional, Any

from personnel.errors import PersonnelError


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def personnel_error(exc: PersonnelError) -> dict:
        """
        Error body for a personnel failure.

        Includes the state rebuilt after a failed mutation, so the caller can
        refresh without a second request.
        """
        response = exc.to_dict()
        if exc.state is not None:
            response["state"] = exc.state.to_dict()
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """
    Raise HTTPException with structured missing parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def http_error_for(exc: PersonnelError) -> HTTPException:
    """Map a personnel error onto its HTTP status with a structured body."""
    return HTTPException(
        status_code=exc.status_code,
        detail=ValidationErrorResponse.personnel_error(exc)
    )


def validate_required_id(value: Optional[Any], parameter: str) -> str:
    """
    Validate that a required record id is present.

    Store ids are opaque; only blank values are rejected.
    """
    if value is None or isinstance(value, bool) or not str(value).strip():
        raise_missing_parameter(parameter)
    return str(value).strip()
