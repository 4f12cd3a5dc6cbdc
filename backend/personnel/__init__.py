"""
Personnel Module

Reconciles the school's two personnel stores into one view and manages the
link between a teacher's directory record and their login account.

Features:
- Unified person view (email as identity key)
- Eligible-pool computation and one-to-one linkage
- Account provisioning with one-time temporary passwords
- Directory record maintenance
- Staff approval queue
"""

from .errors import (
    PersonnelError,
    ValidationError,
    ConflictError,
    NotFoundError,
    NetworkError,
    DuplicateUsernameError,
    CredentialAlreadyRevealedError,
    StoreContractError,
)
from .models import (
    Role,
    Provenance,
    LinkState,
    LinkMarker,
    DirectoryRecord,
    AccountRecord,
    UnifiedPersonView,
    PersonnelSnapshot,
    OneTimeCredential,
)
from .reconciliation import build_unified_view, reconcile
from .service import PersonnelService

__all__ = [
    'PersonnelError',
    'ValidationError',
    'ConflictError',
    'NotFoundError',
    'NetworkError',
    'DuplicateUsernameError',
    'CredentialAlreadyRevealedError',
    'StoreContractError',
    'Role',
    'Provenance',
    'LinkState',
    'LinkMarker',
    'DirectoryRecord',
    'AccountRecord',
    'UnifiedPersonView',
    'PersonnelSnapshot',
    'OneTimeCredential',
    'build_unified_view',
    'reconcile',
    'PersonnelService',
]
