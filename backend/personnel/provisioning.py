"""
Personnel - Provisioning Service

Creates login accounts and issues one-time temporary credentials.

Rules:
- username and role are required; is_active and must_change_password default to True
- without an explicit password the Account Store generates one and returns it once
- a temporary password is never re-readable; it travels only inside a
  OneTimeCredential that can be revealed a single time
- reset_password can be called repeatedly; each call issues a fresh credential
"""

import logging
import re
from typing import Optional, Dict, Any, List, Sequence

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic import ValidationError as SchemaValidationError

from .clients import AccountStoreClient, StudentRosterClient
from .errors import (
    PersonnelError,
    ValidationError,
    ConflictError,
    NotFoundError,
    DuplicateUsernameError,
    StoreContractError,
)
from .linkage import LinkageWorkflow, is_teacher_eligible
from .models import (
    AccountRecord,
    DirectoryRecord,
    CredentialIssue,
    OneTimeCredential,
    PersonnelSnapshot,
    ProvisionResult,
    Role,
    normalize_id,
)
from .audit import PersonnelAuditEvent, log_personnel_event

logger = logging.getLogger(__name__)


# ==================== REQUEST MODEL ====================

class AccountCreateRequest(BaseModel):
    """Fields accepted when provisioning an account"""
    username: str = Field(..., max_length=150)
    role: Role
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    is_active: bool = True
    must_change_password: bool = True
    password: Optional[str] = Field(None, min_length=1)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Username is required")
        return v

    @field_validator("role", mode="before")
    @classmethod
    def parse_role(cls, v):
        role = Role.parse(v)
        if role is None:
            raise ValueError("Role is required")
        if isinstance(v, str) and role.value.lower() != v.strip().lower():
            raise ValueError(f"Unknown role {v!r}")
        return role

    @field_validator("email", "phone", "password", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "username": self.username,
            "email": self.email or "",
            "phone": self.phone or "",
            "role": self.role.value,
            "is_active": self.is_active,
            "must_change_password": self.must_change_password,
        }
        if self.password:
            payload["password"] = self.password
        return payload


class AccountUpdateRequest(BaseModel):
    """Partial account edit; only the fields that were sent are forwarded"""
    username: Optional[str] = Field(None, max_length=150)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    first_name: Optional[str] = Field(None, max_length=150)
    last_name: Optional[str] = Field(None, max_length=150)
    is_active: Optional[bool] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        if v is None or not v.strip():
            raise ValueError("Username cannot be blank")
        return v.strip()

    @field_validator("email", "phone", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("is_active")
    @classmethod
    def validate_is_active(cls, v):
        if v is None:
            raise ValueError("is_active must be true or false")
        return v

    def to_changes(self) -> Dict[str, Any]:
        # A cleared email or phone is sent as an empty string
        changes = self.model_dump(exclude_unset=True)
        return {k: ("" if v is None else v) for k, v in changes.items()}


def _raise_schema_error(e: SchemaValidationError, default: str):
    first = e.errors()[0]
    field = str(first["loc"][0]) if first.get("loc") else None
    message = first.get("msg", default)
    if first.get("type") == "missing":
        message = f"{field} is required"
    raise ValidationError(message, field=field, details={"errors": len(e.errors())})


def parse_account_request(fields: Dict[str, Any]) -> AccountCreateRequest:
    """Validate raw fields, raising the personnel ValidationError."""
    try:
        return AccountCreateRequest(**fields)
    except SchemaValidationError as e:
        _raise_schema_error(e, "Invalid account fields")


def parse_account_update(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a partial account edit and return the changes to send."""
    try:
        return AccountUpdateRequest(**fields).to_changes()
    except SchemaValidationError as e:
        _raise_schema_error(e, "Invalid account fields")


def check_username_available(username: str, accounts: Sequence[AccountRecord]) -> None:
    wanted = username.strip().lower()
    for account in accounts:
        if account.username.lower() == wanted:
            raise DuplicateUsernameError(
                f"Username {username!r} is already taken",
                field="username",
                details={"account_id": account.id},
            )


# ==================== DRAFT HELPERS ====================

def suggest_username(full_name: str) -> str:
    """Lowercased full name with all whitespace removed."""
    return re.sub(r"\s+", "", (full_name or "").lower())


def draft_for_person(record: DirectoryRecord, role: Role) -> Dict[str, Any]:
    """Prefilled account fields for a roster record (teacher or student)."""
    return {
        "username": suggest_username(record.full_name),
        "email": record.contact_email,
        "phone": record.contact_phone,
        "role": role.value,
        "is_active": True,
        "must_change_password": True,
    }


def draft_for_teacher(record: DirectoryRecord) -> Dict[str, Any]:
    return draft_for_person(record, Role.TEACHER)


# ==================== SERVICE ====================

class ProvisioningService:
    """
    Account provisioning against the Account Store.

    Provides:
    - create_account / create_and_link / create_and_link_student
    - reset_password (idempotent)
    - set_active, delete_account
    - staff approval queue
    """

    def __init__(
        self,
        accounts: AccountStoreClient,
        linkage: LinkageWorkflow,
        students: Optional[StudentRosterClient] = None
    ):
        self.accounts = accounts
        self.linkage = linkage
        self.students = students

    async def create_account(
        self,
        fields: Dict[str, Any],
        existing_accounts: Optional[Sequence[AccountRecord]] = None,
        performed_by: str = "admin"
    ) -> ProvisionResult:
        """
        Create an account, returning its one-time credential when one was generated.

        Args:
            fields: username, role, and optional email/phone/is_active/must_change_password/password
            existing_accounts: Fresh account snapshot used for the duplicate-username check
            performed_by: Operator recorded in the audit log

        Raises:
            ValidationError: Missing or malformed fields
            DuplicateUsernameError: Username already taken
        """
        request = parse_account_request(fields)
        if existing_accounts is not None:
            check_username_available(request.username, existing_accounts)

        try:
            body = await self.accounts.create_user(request.to_payload()) or {}
        except PersonnelError as e:
            log_personnel_event(
                PersonnelAuditEvent.ACCOUNT_CREATE_FAILED,
                performed_by,
                {"role": request.role.value, "error": e.code},
                success=False,
            )
            raise

        # Stores may echo only part of the record
        account = AccountRecord.from_payload({**request.to_payload(), **body})
        credential = None
        temp_password = body.get("temp_password")
        if temp_password:
            credential = OneTimeCredential(str(temp_password))
        elif request.password is None:
            if account.id is None:
                raise StoreContractError("Account store returned neither an id nor a temporary password")
            logger.warning(f"Account {account.id} created without a temporary password; reissuing one")
            issue = await self.reset_password(account.id, performed_by=performed_by)
            credential = issue.credential

        log_personnel_event(
            PersonnelAuditEvent.ACCOUNT_CREATED,
            performed_by,
            {
                "account_id": account.id,
                "role": request.role.value,
                "generated_password": request.password is None,
                "must_change_password": request.must_change_password,
            },
        )
        return ProvisionResult(account=account, credential=credential)

    async def reset_password(self, account_id: Any, performed_by: str = "admin") -> CredentialIssue:
        """
        Issue a fresh temporary password, replacing the previous one.

        Raises:
            NotFoundError: The account does not exist
        """
        key = normalize_id(account_id)
        if key is None:
            raise ValidationError("account_id is required", field="account_id")

        body = await self.accounts.reset_password(key)
        temp_password = body.get("temp_password")
        if not temp_password:
            raise StoreContractError(f"Password reset for {key} returned no temporary password")

        log_personnel_event(PersonnelAuditEvent.PASSWORD_RESET, performed_by, {"account_id": key})
        return CredentialIssue(account_id=key, credential=OneTimeCredential(str(temp_password)))

    async def set_active(self, account_id: Any, is_active: bool, performed_by: str = "admin") -> AccountRecord:
        key = normalize_id(account_id)
        if key is None:
            raise ValidationError("account_id is required", field="account_id")

        body = await self.accounts.update_user(key, {"is_active": is_active})
        event = PersonnelAuditEvent.ACCOUNT_ACTIVATED if is_active else PersonnelAuditEvent.ACCOUNT_DEACTIVATED
        log_personnel_event(event, performed_by, {"account_id": key})

        if isinstance(body, dict) and body:
            return AccountRecord.from_payload(body)
        return AccountRecord(id=key, is_active=is_active)

    async def delete_account(self, account_id: Any, performed_by: str = "admin") -> None:
        key = normalize_id(account_id)
        if key is None:
            raise ValidationError("account_id is required", field="account_id")
        await self.accounts.delete_user(key)
        log_personnel_event(PersonnelAuditEvent.ACCOUNT_DELETED, performed_by, {"account_id": key})

    async def create_and_link(
        self,
        teacher_id: Any,
        fields: Dict[str, Any],
        snapshot: PersonnelSnapshot,
        performed_by: str = "admin"
    ) -> ProvisionResult:
        """
        Create a Teacher account for a directory record and bind the two.

        The two writes are not atomic. If the link fails after the account was
        created, the result reports linked=False with the error instead of
        raising, so the one-time credential still reaches the operator.
        """
        teacher = snapshot.find_directory(teacher_id)
        if teacher is None:
            raise NotFoundError(f"Teacher {teacher_id} no longer exists", field="teacher_id")
        if not is_teacher_eligible(teacher):
            raise ConflictError(f"Teacher {teacher.id} is already linked to a login", field="teacher_id")

        merged = draft_for_teacher(teacher)
        merged.update({k: v for k, v in fields.items() if v is not None})
        merged["role"] = Role.TEACHER.value

        result = await self.create_account(
            merged, existing_accounts=snapshot.account_records, performed_by=performed_by
        )
        result.teacher_id = teacher.id

        extended = PersonnelSnapshot(
            directory_records=snapshot.directory_records,
            account_records=list(snapshot.account_records) + [result.account],
        )
        try:
            await self.linkage.link(teacher.id, result.account.id, extended, performed_by=performed_by)
            result.linked = True
        except PersonnelError as e:
            logger.warning(
                f"Account {result.account.id} created but linking to teacher {teacher.id} failed: {e.code}"
            )
            result.link_error = e.message
        return result

    async def create_and_link_student(
        self,
        student_id: Any,
        fields: Dict[str, Any],
        existing_accounts: Optional[Sequence[AccountRecord]] = None,
        performed_by: str = "admin"
    ) -> ProvisionResult:
        """
        Create a Student account for an unlinked roster entry and bind the two.

        Same partial-failure contract as create_and_link: a failed link after
        the account was created is reported, not raised.
        """
        if self.students is None:
            raise ValidationError("Student roster is not configured", field="student_id")
        key = normalize_id(student_id)
        if key is None:
            raise ValidationError("student_id is required", field="student_id")

        rows = await self.students.list_unlinked_students()
        student = None
        for row in rows:
            if isinstance(row, dict) and normalize_id(row.get("id")) == key:
                student = DirectoryRecord.from_payload(row)
                break
        if student is None:
            raise NotFoundError(f"Student {key} is not an unlinked roster entry", field="student_id")

        merged = draft_for_person(student, Role.STUDENT)
        merged.update({k: v for k, v in fields.items() if v is not None})
        merged["role"] = Role.STUDENT.value

        result = await self.create_account(
            merged, existing_accounts=existing_accounts, performed_by=performed_by
        )
        result.student_id = key

        try:
            await self.students.link_user(key, result.account.id)
            result.linked = True
            log_personnel_event(
                PersonnelAuditEvent.LINKED,
                performed_by,
                {"student_id": key, "account_id": result.account.id},
            )
        except PersonnelError as e:
            logger.warning(
                f"Account {result.account.id} created but linking to student {key} failed: {e.code}"
            )
            log_personnel_event(
                PersonnelAuditEvent.LINK_FAILED,
                performed_by,
                {"student_id": key, "account_id": result.account.id, "error": e.code},
                success=False,
            )
            result.link_error = e.message
        return result

    # ==================== STAFF APPROVALS ====================

    async def list_pending_approvals(self) -> List[AccountRecord]:
        """Accounts waiting for staff approval."""
        rows = await self.accounts.list_approvals()
        return [AccountRecord.from_payload(row) for row in rows if not row.get("is_approved")]

    async def decide_approval(self, account_id: Any, approved: bool, performed_by: str = "admin") -> None:
        key = normalize_id(account_id)
        if key is None:
            raise ValidationError("account_id is required", field="account_id")
        await self.accounts.decide_approval(key, approved)
        log_personnel_event(
            PersonnelAuditEvent.APPROVAL_DECIDED,
            performed_by,
            {"account_id": key, "approved": approved},
        )
