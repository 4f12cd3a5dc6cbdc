"""
Personnel - Error Taxonomy

Every failure the personnel layer surfaces is one of these. The router maps
them onto HTTP status codes; callers can tell a stale reference from a
transient outage without parsing messages.
"""

from typing import Optional, Dict, Any


class PersonnelError(Exception):
    """Base exception for personnel operations"""

    code = "personnel_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}
        # Rebuilt state attached by PersonnelService after a failed mutation
        self.state = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "parameter": self.field,
            "message": self.message,
            "details": self.details or None,
        }


class ValidationError(PersonnelError):
    """Raised for malformed or missing input"""
    code = "validation_error"
    status_code = 422


class ConflictError(PersonnelError):
    """Raised for double-link attempts and duplicate usernames"""
    code = "conflict"
    status_code = 409


class NotFoundError(PersonnelError):
    """Raised when a referenced record no longer exists"""
    code = "not_found"
    status_code = 404


class NetworkError(PersonnelError):
    """Raised when a store is unreachable, times out or fails server-side"""
    code = "network_error"
    status_code = 503


class DuplicateUsernameError(ValidationError, ConflictError):
    """Username already taken in the Account Store"""
    code = "duplicate_username"
    status_code = 409


class CredentialAlreadyRevealedError(ConflictError):
    """A one-time credential was read a second time"""
    code = "credential_already_revealed"


class StoreContractError(PersonnelError):
    """A store answered successfully but without a field the operation needs"""
    code = "store_contract_error"
    status_code = 502
