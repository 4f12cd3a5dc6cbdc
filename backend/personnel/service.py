"""
Personnel - Service Layer

Entry point used by the router. Owns the rebuild discipline:
- every read computes from a freshly fetched snapshot of both stores
- both store lists are fetched concurrently
- every mutation is followed by a full rebuild, whether it succeeded or not
- nothing derived from a snapshot is kept between calls
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic import ValidationError as SchemaValidationError

from config import Settings
from .clients import AccountStoreClient, DirectoryStoreClient, StudentRosterClient
from .errors import NotFoundError, PersonnelError, ValidationError
from .linkage import (
    LinkageWorkflow,
    list_eligible_accounts,
    list_eligible_teachers,
    search_accounts,
    search_teachers,
)
from .models import (
    AccountRecord,
    DirectoryRecord,
    PersonnelSnapshot,
    Provenance,
    UnifiedPersonView,
    normalize_id,
)
from .provisioning import ProvisioningService, draft_for_teacher, parse_account_update
from .reconciliation import (
    ReconciliationResult,
    RoleFilter,
    designation_options,
    filter_views,
    reconcile,
)
from .audit import PersonnelAuditEvent, log_personnel_event

logger = logging.getLogger(__name__)


# ==================== DIRECTORY INPUT ====================

class TeacherInput(BaseModel):
    """Directory record fields an operator can create or edit"""
    full_name: str = Field(..., max_length=255)
    designation: Optional[str] = Field(None, max_length=100)
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = Field(None, max_length=50)
    subject: Optional[str] = Field(None, description="Subject id")
    profile: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Full name is required")
        return v

    @field_validator("designation", "contact_email", "contact_phone", "subject", "profile", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def to_payload(self) -> Dict[str, Any]:
        # Only send what was filled in
        payload = {"full_name": self.full_name}
        for name in ("designation", "contact_email", "contact_phone", "subject", "profile"):
            value = getattr(self, name)
            if value:
                payload[name] = value
        return payload


class TeacherUpdateInput(TeacherInput):
    """Partial directory edit; full_name may be omitted but not blanked"""
    full_name: Optional[str] = Field(None, max_length=255)

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v):
        if v is None or not v.strip():
            raise ValueError("Full name cannot be blank")
        return v.strip()

    def to_changes(self) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        return {k: ("" if v is None else v) for k, v in changes.items()}


def _schema_error(e: SchemaValidationError) -> ValidationError:
    first = e.errors()[0]
    field = str(first["loc"][0]) if first.get("loc") else None
    message = f"{field} is required" if first.get("type") == "missing" else first.get("msg")
    return ValidationError(message, field=field)


def parse_teacher_input(fields: Dict[str, Any]) -> TeacherInput:
    try:
        return TeacherInput(**fields)
    except SchemaValidationError as e:
        raise _schema_error(e)


def parse_teacher_update(fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return TeacherUpdateInput(**fields).to_changes()
    except SchemaValidationError as e:
        raise _schema_error(e)


# Fields that can be edited through a unified entry, per provenance store
EDITABLE_FIELDS = {
    Provenance.ACCOUNT: ("username", "email", "phone", "first_name", "last_name", "is_active"),
    Provenance.DIRECTORY: ("full_name", "designation", "contact_email", "contact_phone", "subject", "profile"),
}


# ==================== RESULTS ====================

@dataclass
class RebuiltState:
    """Everything derived from one fresh snapshot."""
    snapshot: PersonnelSnapshot
    reconciliation: ReconciliationResult
    eligible_teachers: List[DirectoryRecord]
    eligible_accounts: List[AccountRecord]

    def to_dict(self) -> Dict[str, Any]:
        data = self.reconciliation.to_dict()
        data["eligible_teachers"] = [r.to_dict() for r in self.eligible_teachers]
        data["eligible_accounts"] = [a.to_dict() for a in self.eligible_accounts]
        data["fetched_at"] = self.snapshot.fetched_at.isoformat()
        return data


@dataclass
class MutationOutcome:
    """A mutation's result plus the state rebuilt right after it."""
    result: Any
    state: Optional[RebuiltState]
    rebuild_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if hasattr(self.result, "to_dict"):
            data = {"result": self.result.to_dict()}
        else:
            data = {"result": self.result}
        data["state"] = self.state.to_dict() if self.state else None
        data["rebuild_error"] = self.rebuild_error
        return data


# ==================== SERVICE ====================

class PersonnelService:
    """
    Personnel Service - reconciliation, linkage and provisioning over two stores.

    Ensures:
    - No cached view survives a mutation
    - Errors from a mutation carry the state rebuilt after it (error.state)
    - Edits and deletes on a unified entry go to the store named by its provenance
    """

    def __init__(
        self,
        directory: DirectoryStoreClient,
        accounts: AccountStoreClient,
        role_filter: RoleFilter = None,
        students: Optional[StudentRosterClient] = None
    ):
        self.directory = directory
        self.accounts = accounts
        self.students = students
        self.role_filter = role_filter
        self.linkage = LinkageWorkflow(directory)
        self.provisioning = ProvisioningService(accounts, self.linkage, students=students)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PersonnelService":
        common = {
            "token": settings.STORE_API_TOKEN,
            "timeout": settings.STORE_TIMEOUT_SECONDS,
            "page_size": settings.STORE_PAGE_SIZE,
            "trailing_slash": settings.STORE_TRAILING_SLASH,
        }
        directory = DirectoryStoreClient(
            settings.STORE_API_BASE, resource=settings.DIRECTORY_RESOURCE, **common
        )
        accounts = AccountStoreClient(
            settings.STORE_API_BASE,
            resource=settings.ACCOUNT_RESOURCE,
            approvals_resource=settings.APPROVALS_RESOURCE,
            **common
        )
        students = StudentRosterClient(
            settings.STORE_API_BASE, resource=settings.STUDENT_RESOURCE, **common
        )
        return cls(directory, accounts, students=students)

    async def aclose(self):
        clients = [self.directory, self.accounts]
        if self.students is not None:
            clients.append(self.students)
        await asyncio.gather(*(c.aclose() for c in clients))

    # ==================== SNAPSHOTS ====================

    async def fetch_snapshot(self) -> PersonnelSnapshot:
        """Fetch both stores concurrently."""
        teacher_rows, user_rows = await asyncio.gather(
            self.directory.list_teachers(),
            self.accounts.list_users(),
        )
        return PersonnelSnapshot(
            directory_records=[DirectoryRecord.from_payload(r) for r in teacher_rows if isinstance(r, dict)],
            account_records=[AccountRecord.from_payload(r) for r in user_rows if isinstance(r, dict)],
        )

    def build_state(self, snapshot: PersonnelSnapshot, role_filter: RoleFilter = None) -> RebuiltState:
        return RebuiltState(
            snapshot=snapshot,
            reconciliation=reconcile(
                snapshot.directory_records,
                snapshot.account_records,
                role_filter if role_filter is not None else self.role_filter,
            ),
            eligible_teachers=list_eligible_teachers(snapshot.directory_records),
            eligible_accounts=list_eligible_accounts(snapshot.account_records, snapshot.directory_records),
        )

    async def rebuild(self, role_filter: RoleFilter = None) -> RebuiltState:
        return self.build_state(await self.fetch_snapshot(), role_filter)

    # ==================== READS ====================

    async def unified_view(
        self,
        role_filter: RoleFilter = None,
        query: str = "",
        designation: Optional[str] = None
    ) -> Dict[str, Any]:
        state = await self.rebuild(role_filter)
        views = state.reconciliation.views
        data = state.reconciliation.to_dict()
        data["people"] = [v.to_dict() for v in filter_views(views, query, designation)]
        data["designations"] = designation_options(views)
        return data

    async def eligible_pools(self, teacher_query: str = "", account_query: str = "") -> Dict[str, Any]:
        state = await self.rebuild()
        teachers = search_teachers(state.eligible_teachers, teacher_query)
        accounts = search_accounts(state.eligible_accounts, account_query)
        return {
            "teachers": [r.to_dict() for r in teachers],
            "accounts": [a.to_dict() for a in accounts],
            "counts": {
                "teachers": len(state.eligible_teachers),
                "accounts": len(state.eligible_accounts),
            },
        }

    async def account_draft(self, teacher_id: Any) -> Dict[str, Any]:
        snapshot = await self.fetch_snapshot()
        teacher = snapshot.find_directory(teacher_id)
        if teacher is None:
            raise NotFoundError(f"Teacher {teacher_id} no longer exists", field="teacher_id")
        draft = draft_for_teacher(teacher)
        draft["already_linked"] = not teacher.link_marker.is_unlinked
        return draft

    async def pending_approvals(self) -> List[AccountRecord]:
        return await self.provisioning.list_pending_approvals()

    # ==================== MUTATIONS ====================

    async def _mutate(self, action: str, operation: Callable[[], Awaitable[Any]]) -> MutationOutcome:
        try:
            result = await operation()
        except Exception as e:
            state = await self._rebuild_after_failure(action)
            if isinstance(e, PersonnelError):
                e.state = state
            raise

        try:
            state = await self.rebuild()
        except PersonnelError as e:
            logger.warning(f"{action} succeeded but the rebuild failed: {e.message}")
            return MutationOutcome(result=result, state=None, rebuild_error=e.message)
        return MutationOutcome(result=result, state=state)

    async def _rebuild_after_failure(self, action: str) -> Optional[RebuiltState]:
        try:
            return await self.rebuild()
        except PersonnelError as e:
            logger.warning(f"Rebuild after failed {action} also failed: {e.message}")
            return None

    async def link(
        self,
        teacher_id: Any,
        user_id: Any,
        performed_by: str = "admin",
        snapshot: Optional[PersonnelSnapshot] = None
    ) -> MutationOutcome:
        """Bind a directory record to an account, checked against a fresh snapshot by default."""
        async def operation():
            current = snapshot if snapshot is not None else await self.fetch_snapshot()
            return await self.linkage.link(teacher_id, user_id, current, performed_by=performed_by)

        return await self._mutate("link", operation)

    async def create_account(self, fields: Dict[str, Any], performed_by: str = "admin") -> MutationOutcome:
        async def operation():
            rows = await self.accounts.list_users()
            existing = [AccountRecord.from_payload(r) for r in rows if isinstance(r, dict)]
            return await self.provisioning.create_account(
                fields, existing_accounts=existing, performed_by=performed_by
            )

        return await self._mutate("create_account", operation)

    async def create_and_link(
        self,
        teacher_id: Any,
        fields: Dict[str, Any],
        performed_by: str = "admin"
    ) -> MutationOutcome:
        async def operation():
            snapshot = await self.fetch_snapshot()
            return await self.provisioning.create_and_link(
                teacher_id, fields, snapshot, performed_by=performed_by
            )

        return await self._mutate("create_and_link", operation)

    async def create_and_link_student(
        self,
        student_id: Any,
        fields: Dict[str, Any],
        performed_by: str = "admin"
    ) -> MutationOutcome:
        async def operation():
            rows = await self.accounts.list_users()
            existing = [AccountRecord.from_payload(r) for r in rows if isinstance(r, dict)]
            return await self.provisioning.create_and_link_student(
                student_id, fields, existing_accounts=existing, performed_by=performed_by
            )

        return await self._mutate("create_and_link_student", operation)

    async def reset_password(self, account_id: Any, performed_by: str = "admin") -> MutationOutcome:
        return await self._mutate(
            "reset_password",
            lambda: self.provisioning.reset_password(account_id, performed_by=performed_by),
        )

    async def set_account_active(
        self,
        account_id: Any,
        is_active: bool,
        performed_by: str = "admin"
    ) -> MutationOutcome:
        return await self._mutate(
            "set_active",
            lambda: self.provisioning.set_active(account_id, is_active, performed_by=performed_by),
        )

    async def delete_account(self, account_id: Any, performed_by: str = "admin") -> MutationOutcome:
        return await self._mutate(
            "delete_account",
            lambda: self.provisioning.delete_account(account_id, performed_by=performed_by),
        )

    async def decide_approval(
        self,
        account_id: Any,
        approved: bool,
        performed_by: str = "admin"
    ) -> MutationOutcome:
        return await self._mutate(
            "decide_approval",
            lambda: self.provisioning.decide_approval(account_id, approved, performed_by=performed_by),
        )

    # ==================== DIRECTORY CRUD ====================

    async def create_teacher(self, fields: Dict[str, Any], performed_by: str = "admin") -> MutationOutcome:
        async def operation():
            teacher = parse_teacher_input(fields)
            body = await self.directory.create_teacher(teacher.to_payload())
            record = DirectoryRecord.from_payload({**teacher.to_payload(), **(body or {})})
            log_personnel_event(PersonnelAuditEvent.TEACHER_CREATED, performed_by, {"teacher_id": record.id})
            return record

        return await self._mutate("create_teacher", operation)

    async def update_teacher(
        self,
        teacher_id: Any,
        fields: Dict[str, Any],
        performed_by: str = "admin"
    ) -> MutationOutcome:
        async def operation():
            key = _require_id(teacher_id, "teacher_id")
            teacher = parse_teacher_input(fields)
            body = await self.directory.update_teacher(key, teacher.to_payload())
            record = DirectoryRecord.from_payload({"id": key, **teacher.to_payload(), **(body or {})})
            log_personnel_event(PersonnelAuditEvent.TEACHER_UPDATED, performed_by, {"teacher_id": key})
            return record

        return await self._mutate("update_teacher", operation)

    async def delete_teacher(self, teacher_id: Any, performed_by: str = "admin") -> MutationOutcome:
        async def operation():
            key = _require_id(teacher_id, "teacher_id")
            await self.directory.delete_teacher(key)
            log_personnel_event(PersonnelAuditEvent.TEACHER_DELETED, performed_by, {"teacher_id": key})
            return {"deleted": True, "teacher_id": key}

        return await self._mutate("delete_teacher", operation)

    # ==================== UNIFIED ENTRY ROUTING ====================

    async def _find_view(self, identity_key: str, role_filter: RoleFilter = None) -> UnifiedPersonView:
        """
        Resolve an identity key in the view built with the operator's role filter.

        A key can merge differently under another filter (a Teacher record and
        a Student login sharing an email).
        """
        state = await self.rebuild(role_filter)
        wanted = (identity_key or "").strip()
        for view in state.reconciliation.views:
            if view.identity_key == wanted or view.identity_key == wanted.lower():
                if view.record_id is None:
                    raise ValidationError(
                        f"Entry {identity_key!r} has no store record id and cannot be changed",
                        field="identity_key",
                    )
                return view
        raise NotFoundError(f"No person with identity key {identity_key!r}", field="identity_key")

    async def update_person(
        self,
        identity_key: str,
        fields: Dict[str, Any],
        performed_by: str = "admin",
        role_filter: RoleFilter = None
    ) -> MutationOutcome:
        """Edit a unified entry in the store named by its provenance."""
        async def operation():
            view = await self._find_view(identity_key, role_filter)
            allowed = EDITABLE_FIELDS[view.provenance]
            supplied = {k: v for k, v in fields.items() if k in allowed}
            if not supplied:
                raise ValidationError(
                    f"No editable {view.provenance.value} fields supplied",
                    details={"editable": list(allowed)},
                )
            if view.provenance == Provenance.ACCOUNT:
                changes = parse_account_update(supplied)
                await self.accounts.update_user(view.record_id, changes)
            else:
                changes = parse_teacher_update(supplied)
                await self.directory.update_teacher(view.record_id, changes, partial=True)
            logger.info(f"Updated {view.provenance.value} record {view.record_id} via unified entry")
            return {"provenance": view.provenance.value, "record_id": view.record_id, "updated": sorted(changes)}

        return await self._mutate("update_person", operation)

    async def delete_person(
        self,
        identity_key: str,
        performed_by: str = "admin",
        role_filter: RoleFilter = None
    ) -> MutationOutcome:
        """Delete a unified entry's record from the store named by its provenance."""
        async def operation():
            view = await self._find_view(identity_key, role_filter)
            if view.provenance == Provenance.ACCOUNT:
                await self.accounts.delete_user(view.record_id)
                event = PersonnelAuditEvent.ACCOUNT_DELETED
                details = {"account_id": view.record_id}
            else:
                await self.directory.delete_teacher(view.record_id)
                event = PersonnelAuditEvent.TEACHER_DELETED
                details = {"teacher_id": view.record_id}
            log_personnel_event(event, performed_by, details)
            return {"provenance": view.provenance.value, "record_id": view.record_id, "deleted": True}

        return await self._mutate("delete_person", operation)


def _require_id(value: Any, field: str) -> str:
    key = normalize_id(value)
    if key is None:
        raise ValidationError(f"{field} is required", field=field)
    return key
