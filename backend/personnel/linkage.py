"""
Personnel - Linkage Workflow

Computes the eligible (currently unlinked) pools of both stores and binds one
directory record to one account.

The bind is a single write to the Directory Store. The account-side marker is
derived by the stores, so right after a link the Account Store may still report
the account as unlinked. Eligibility therefore also excludes any account that
a directory record in the same snapshot already points at.
"""

import logging
from typing import Any, Iterable, List, Optional, Sequence, Set

from .clients import DirectoryStoreClient
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    AccountRecord,
    DirectoryRecord,
    LinkResult,
    PersonnelSnapshot,
    Role,
    normalize_id,
)
from .audit import PersonnelAuditEvent, log_personnel_event
from .search import filter_by_query

logger = logging.getLogger(__name__)


# ==================== ELIGIBILITY ====================

def is_teacher_eligible(record: DirectoryRecord) -> bool:
    return record.link_marker.is_unlinked


def is_teacher_like(account: AccountRecord) -> bool:
    return account.role is None or account.role == Role.TEACHER


def linked_account_ids(directory_records: Iterable[DirectoryRecord]) -> Set[str]:
    """Account ids that some directory record is bound to."""
    return {
        r.link_marker.target_id
        for r in directory_records
        if r.link_marker.is_linked_to_known
    }


def is_account_eligible(account: AccountRecord, taken_ids: Optional[Set[str]] = None) -> bool:
    if not is_teacher_like(account):
        return False
    if not account.linked_directory_marker.is_unlinked:
        return False
    return not (taken_ids and account.id in taken_ids)


def list_eligible_teachers(directory_records: Iterable[DirectoryRecord]) -> List[DirectoryRecord]:
    return [r for r in directory_records if is_teacher_eligible(r)]


def list_eligible_accounts(
    account_records: Iterable[AccountRecord],
    directory_records: Optional[Iterable[DirectoryRecord]] = None
) -> List[AccountRecord]:
    """
    Teacher-like accounts with no link marker.

    When the directory snapshot is given, accounts it already points at are
    excluded as well.
    """
    taken = linked_account_ids(directory_records) if directory_records is not None else set()
    return [a for a in account_records if is_account_eligible(a, taken)]


# ==================== SEARCH ====================

def search_teachers(records: Sequence[DirectoryRecord], query: str) -> List[DirectoryRecord]:
    return filter_by_query(records, query, lambda r: (r.full_name, r.contact_email, r.contact_phone))


def search_accounts(records: Sequence[AccountRecord], query: str) -> List[AccountRecord]:
    return filter_by_query(
        records, query, lambda a: (a.username, a.email, a.phone, a.display_name)
    )


# ==================== LINK ====================

class LinkageWorkflow:
    """Binds a directory record to an account through the Directory Store."""

    def __init__(self, directory: DirectoryStoreClient):
        self.directory = directory

    def check_preconditions(
        self,
        teacher_id: Any,
        user_id: Any,
        snapshot: PersonnelSnapshot
    ) -> None:
        """
        Validate a link against the snapshot the operator is looking at.

        Raises:
            NotFoundError: Either id is not in the snapshot
            ConflictError: Either side already carries a link
            ValidationError: The account is not Teacher-like
        """
        teacher = snapshot.find_directory(teacher_id)
        if teacher is None:
            raise NotFoundError(f"Teacher {teacher_id} no longer exists", field="teacher_id")
        account = snapshot.find_account(user_id)
        if account is None:
            raise NotFoundError(f"User {user_id} no longer exists", field="user_id")

        if not is_teacher_eligible(teacher):
            raise ConflictError(
                f"Teacher {teacher.id} is already linked to a login",
                field="teacher_id",
                details={"link_marker": teacher.link_marker.to_dict()},
            )
        if not is_teacher_like(account):
            raise ValidationError(
                f"User {account.id} has role {account.role.value}, expected Teacher",
                field="user_id",
            )
        if not is_account_eligible(account, linked_account_ids(snapshot.directory_records)):
            raise ConflictError(f"User {account.id} is already linked to a teacher", field="user_id")

    async def link(
        self,
        teacher_id: Any,
        user_id: Any,
        snapshot: PersonnelSnapshot,
        performed_by: str = "admin"
    ) -> LinkResult:
        """
        Bind a directory record to an account.

        Args:
            teacher_id: Directory record id (must be in the eligible pool)
            user_id: Account id (must be in the eligible pool)
            snapshot: Snapshot the eligibility was computed from
            performed_by: Operator recorded in the audit log

        Returns:
            LinkResult; verified is False when the store did not echo the marker
        """
        teacher_key = normalize_id(teacher_id)
        user_key = normalize_id(user_id)
        if teacher_key is None:
            raise ValidationError("teacher_id is required", field="teacher_id")
        if user_key is None:
            raise ValidationError("user_id is required", field="user_id")

        try:
            self.check_preconditions(teacher_key, user_key, snapshot)
            body = await self.directory.link_user(teacher_key, user_key)
        except Exception as e:
            log_personnel_event(
                PersonnelAuditEvent.LINK_FAILED,
                performed_by,
                {"teacher_id": teacher_key, "user_id": user_key, "error": type(e).__name__},
                success=False,
            )
            raise

        verified = False
        if isinstance(body, dict) and "id" in body:
            echoed = DirectoryRecord.from_payload(body)
            verified = echoed.link_marker.target_id == user_key
        if not verified:
            logger.warning(
                f"Link teacher={teacher_key} user={user_key} applied but not confirmed by the store"
            )

        log_personnel_event(
            PersonnelAuditEvent.LINKED,
            performed_by,
            {"teacher_id": teacher_key, "user_id": user_key, "verified": verified},
        )
        return LinkResult(teacher_id=teacher_key, user_id=user_key, linked=True, verified=verified)
