"""
Personnel - Reconciliation Engine

Builds the unified view of personnel from one snapshot of the Directory Store
and one snapshot of the Account Store.

Matching rules:
- identity key = lowercase(trim(email)) when the record has an email
- records without an email get a synthetic "source:id" key and never merge
- accounts are inserted first so their fields win on a matched pair
- directory records fill the fields an account lacks (subject, designation)

The engine is a pure function over the two lists. It never touches the network
and never raises on malformed records; callers rebuild it after every mutation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from .models import (
    AccountRecord,
    DirectoryRecord,
    Provenance,
    Role,
    TEACHER_LIKE_ROLES,
    UnifiedPersonView,
)
from .search import filter_by_query

logger = logging.getLogger(__name__)

ALL_ROLES = "all"

RoleFilter = Union[None, str, Role, Iterable[Union[str, Role]]]


# ==================== KEYS & FILTERS ====================

def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def synthetic_key(source: Provenance, record_id: Optional[str], position: int) -> str:
    """Key for a record that cannot be matched by email."""
    if record_id:
        return f"{source.value}:{record_id}"
    # Missing id: fall back to the record's position in its input list
    return f"{source.value}:#{position}"


def resolve_role_filter(role_filter: RoleFilter = None) -> FrozenSet[Role]:
    """
    Turn a role filter argument into a set of roles.

    None means Teacher-like roles; "all" means every role.
    """
    if role_filter is None:
        return TEACHER_LIKE_ROLES
    if isinstance(role_filter, str) and role_filter.strip().lower() == ALL_ROLES:
        return frozenset(Role)
    if isinstance(role_filter, str):
        role_filter = [role_filter]

    roles = set()
    for value in role_filter:
        role = Role.parse(value)
        if role is not None:
            roles.add(role)
    return frozenset(roles)


def account_in_roles(account: AccountRecord, roles: FrozenSet[Role]) -> bool:
    # Role-less accounts are treated as Teacher-eligible
    if account.role is None:
        return Role.TEACHER in roles
    return account.role in roles


def _unique_key(views: Dict[str, UnifiedPersonView], key: str) -> str:
    # Duplicate ids inside one store must still not group records together
    candidate, suffix = key, 2
    while candidate in views:
        candidate = f"{key}~{suffix}"
        suffix += 1
    return candidate


# ==================== VIEW CONSTRUCTION ====================

def _view_from_account(account: AccountRecord, key: str) -> UnifiedPersonView:
    return UnifiedPersonView(
        identity_key=key,
        display_name=account.display_name,
        provenance=Provenance.ACCOUNT,
        record_id=account.id,
        contact_email=account.email,
        contact_phone=account.phone,
        photo_ref=account.photo_ref,
        account_id=account.id,
        username=account.username,
        role=account.role,
        is_active=account.is_active,
        linked=not account.linked_directory_marker.is_unlinked,
    )


def _view_from_directory(record: DirectoryRecord, key: str) -> UnifiedPersonView:
    return UnifiedPersonView(
        identity_key=key,
        display_name=record.full_name,
        provenance=Provenance.DIRECTORY,
        record_id=record.id,
        designation=record.designation,
        subject=record.subject,
        contact_email=record.contact_email,
        contact_phone=record.contact_phone,
        photo_ref=record.photo_ref,
        directory_id=record.id,
        linked=not record.link_marker.is_unlinked,
    )


_MERGED_FIELDS = (
    "display_name", "designation", "subject",
    "contact_email", "contact_phone", "photo_ref",
)


def _fill_blanks(target: UnifiedPersonView, source: UnifiedPersonView) -> None:
    """Copy fields the target lacks. The target's provenance never changes."""
    for name in _MERGED_FIELDS:
        if not getattr(target, name) and getattr(source, name):
            setattr(target, name, getattr(source, name))
    if target.directory_id is None:
        target.directory_id = source.directory_id
    if target.account_id is None:
        target.account_id = source.account_id
    target.linked = target.linked or source.linked


# ==================== ENGINE ====================

def build_unified_view(
    directory_records: Sequence[DirectoryRecord],
    account_records: Sequence[AccountRecord],
    role_filter: RoleFilter = None
) -> List[UnifiedPersonView]:
    """
    Compute the deduplicated personnel view.

    Args:
        directory_records: Full Directory Store snapshot
        account_records: Full Account Store snapshot
        role_filter: Roles whose accounts participate (default: Teacher-like)

    Returns:
        One UnifiedPersonView per identity key, accounts first, in input order
    """
    roles = resolve_role_filter(role_filter)
    views: Dict[str, UnifiedPersonView] = {}

    for position, account in enumerate(account_records):
        if not account_in_roles(account, roles):
            continue
        email = normalize_email(account.email)
        if email and email in views:
            _fill_blanks(views[email], _view_from_account(account, email))
            continue
        key = email or _unique_key(views, synthetic_key(Provenance.ACCOUNT, account.id, position))
        views[key] = _view_from_account(account, key)

    for position, record in enumerate(directory_records):
        email = normalize_email(record.contact_email)
        if email and email in views:
            _fill_blanks(views[email], _view_from_directory(record, email))
            continue
        key = email or _unique_key(views, synthetic_key(Provenance.DIRECTORY, record.id, position))
        views[key] = _view_from_directory(record, key)

    return list(views.values())


@dataclass
class ReconciliationSummary:
    total: int
    matched_pairs: int
    directory_only: int
    account_only: int
    excluded_accounts: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "matched_pairs": self.matched_pairs,
            "directory_only": self.directory_only,
            "account_only": self.account_only,
            "excluded_accounts": self.excluded_accounts,
        }


@dataclass
class ReconciliationResult:
    views: List[UnifiedPersonView]
    summary: ReconciliationSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "people": [v.to_dict() for v in self.views],
            "summary": self.summary.to_dict(),
        }


def reconcile(
    directory_records: Sequence[DirectoryRecord],
    account_records: Sequence[AccountRecord],
    role_filter: RoleFilter = None
) -> ReconciliationResult:
    """Build the unified view and count how it was assembled."""
    roles = resolve_role_filter(role_filter)
    views = build_unified_view(directory_records, account_records, roles)
    excluded = sum(1 for a in account_records if not account_in_roles(a, roles))

    matched = sum(1 for v in views if v.is_matched)
    directory_only = sum(1 for v in views if v.directory_id is not None and v.account_id is None)
    summary = ReconciliationSummary(
        total=len(views),
        matched_pairs=matched,
        directory_only=directory_only,
        account_only=len(views) - matched - directory_only,
        excluded_accounts=excluded,
    )
    logger.debug(f"Reconciliation pass: {summary.to_dict()}")
    return ReconciliationResult(views=views, summary=summary)


# ==================== PRESENTATION FILTERS ====================

DEFAULT_DESIGNATION = "Teacher"


def filter_views(
    views: Iterable[UnifiedPersonView],
    query: str = "",
    designation: Optional[str] = None
) -> List[UnifiedPersonView]:
    """Search by name, subject, email, designation or phone; exact designation filter."""
    result = filter_by_query(
        views,
        query,
        lambda v: (v.display_name, v.subject, v.contact_email, v.designation, v.contact_phone),
    )
    if designation:
        result = [v for v in result if (v.designation or DEFAULT_DESIGNATION) == designation]
    return result


def designation_options(views: Iterable[UnifiedPersonView]) -> List[str]:
    """Distinct designations, sorted; a blank designation reads as Teacher."""
    return sorted({v.designation or DEFAULT_DESIGNATION for v in views})
