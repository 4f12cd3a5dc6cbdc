"""
Personnel - Data Models

Records as fetched from the two stores, the derived unified view, and the
results returned by linkage and provisioning operations.

Store payloads are parsed at the boundary (`from_payload`) so the rest of the
package never sees the null-vs-missing ambiguity of the raw JSON.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Iterable

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class Role(str, Enum):
    """Account roles known to the Account Store"""
    TEACHER = "Teacher"
    STUDENT = "Student"
    ADMIN = "Admin"
    GENERAL = "General"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """
        Parse a role value case-insensitively.

        Empty or missing roles return None (callers treat that permissively).
        Unrecognised role names fall back to GENERAL.
        """
        if value is None:
            return None
        if isinstance(value, Role):
            return value
        text = str(value).strip()
        if not text:
            return None
        for role in cls:
            if role.value.lower() == text.lower():
                return role
        logger.debug(f"Unrecognised account role {text!r}, treating as General")
        return cls.GENERAL


# Roles that participate in teacher reconciliation and linking by default
TEACHER_LIKE_ROLES = frozenset({Role.TEACHER})


class Provenance(str, Enum):
    """Store that receives edits and deletes issued against a unified entry"""
    DIRECTORY = "directory"
    ACCOUNT = "account"


class LinkState(str, Enum):
    UNLINKED = "unlinked"
    LINKED = "linked"
    UNKNOWN = "unknown"


# ==================== HELPERS ====================

def normalize_id(value: Any) -> Optional[str]:
    """Normalise an opaque store id to a string (None when absent)."""
    if isinstance(value, dict):
        value = value.get("id")
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


# ==================== LINK MARKER ====================

@dataclass(frozen=True)
class LinkMarker:
    """
    Three-state link marker.

    Absent and explicit-null markers both collapse into UNLINKED. UNKNOWN means
    the payload says the record is bound but does not say to what.
    """
    state: LinkState
    target_id: Optional[str] = None

    @classmethod
    def unlinked(cls) -> "LinkMarker":
        return cls(LinkState.UNLINKED)

    @classmethod
    def linked_to(cls, target_id: Any) -> "LinkMarker":
        target = normalize_id(target_id)
        if target is None:
            raise ValueError("linked_to() needs a non-empty target id")
        return cls(LinkState.LINKED, target)

    @classmethod
    def unknown(cls) -> "LinkMarker":
        return cls(LinkState.UNKNOWN)

    @property
    def is_unlinked(self) -> bool:
        return self.state == LinkState.UNLINKED

    @property
    def is_linked_to_known(self) -> bool:
        return self.state == LinkState.LINKED

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        id_keys: Iterable[str],
        label_keys: Iterable[str] = ()
    ) -> "LinkMarker":
        """
        Read a marker from a raw store payload.

        Args:
            payload: Raw JSON object
            id_keys: Keys that may carry the bound record id (scalar or {"id": ...})
            label_keys: Keys that only carry a label of the bound record

        Returns:
            LinkMarker
        """
        for key in id_keys:
            value = payload.get(key)
            if value is None or value == "" or value is False:
                continue
            if isinstance(value, (dict, str, int)) and not isinstance(value, bool):
                target = normalize_id(value)
                if target is not None:
                    return cls(LinkState.LINKED, target)
            # Present but not an id we can resolve
            return cls.unknown()

        for key in label_keys:
            if payload.get(key):
                return cls.unknown()

        return cls.unlinked()

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "target_id": self.target_id}


DIRECTORY_MARKER_ID_KEYS = ("user_id", "user")
DIRECTORY_MARKER_LABEL_KEYS = ("user_username",)
ACCOUNT_MARKER_ID_KEYS = ("teacher_id", "teacher", "linked_teacher")
ACCOUNT_MARKER_LABEL_KEYS = ("teacher_name",)


# ==================== STORE RECORDS ====================

@dataclass
class DirectoryRecord:
    """Teacher professional profile held by the Directory Store."""
    id: Optional[str]
    full_name: str = ""
    designation: str = ""
    subject: str = ""
    subject_id: Optional[str] = None
    contact_email: str = ""
    contact_phone: str = ""
    photo_ref: Optional[str] = None
    intro_text: str = ""
    link_marker: LinkMarker = field(default_factory=LinkMarker.unlinked)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DirectoryRecord":
        subject = payload.get("subject")
        subject_id = None
        subject_label = _text(payload.get("subject_name"))
        if isinstance(subject, dict):
            subject_id = normalize_id(subject)
            subject_label = subject_label or _text(subject.get("name") or subject.get("title"))
        elif isinstance(subject, int) and not isinstance(subject, bool):
            subject_id = str(subject)
        elif isinstance(subject, str):
            subject_label = subject_label or subject.strip()

        return cls(
            id=normalize_id(payload.get("id")),
            full_name=_text(payload.get("full_name") or payload.get("name")),
            designation=_text(payload.get("designation")),
            subject=subject_label,
            subject_id=subject_id,
            contact_email=_text(payload.get("contact_email")),
            contact_phone=_text(payload.get("contact_phone")),
            photo_ref=payload.get("photo") or None,
            intro_text=_text(payload.get("profile")),
            link_marker=LinkMarker.from_payload(
                payload, DIRECTORY_MARKER_ID_KEYS, DIRECTORY_MARKER_LABEL_KEYS
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "designation": self.designation,
            "subject": self.subject,
            "subject_id": self.subject_id,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "photo_ref": self.photo_ref,
            "intro_text": self.intro_text,
            "link_marker": self.link_marker.to_dict(),
        }


@dataclass
class AccountRecord:
    """Login-capable identity held by the Account Store."""
    id: Optional[str]
    username: str = ""
    email: str = ""
    phone: str = ""
    role: Optional[Role] = None
    is_active: bool = True
    must_change_password: bool = False
    first_name: str = ""
    last_name: str = ""
    photo_ref: Optional[str] = None
    is_approved: Optional[bool] = None
    linked_directory_marker: LinkMarker = field(default_factory=LinkMarker.unlinked)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccountRecord":
        # temp_password is deliberately not read: it never lives on a record
        is_active = payload.get("is_active")
        is_approved = payload.get("is_approved")
        return cls(
            id=normalize_id(payload.get("id")),
            username=_text(payload.get("username")),
            email=_text(payload.get("email")),
            phone=_text(payload.get("phone")),
            role=Role.parse(payload.get("role")),
            is_active=True if is_active is None else bool(is_active),
            must_change_password=bool(payload.get("must_change_password")),
            first_name=_text(payload.get("first_name")),
            last_name=_text(payload.get("last_name")),
            photo_ref=payload.get("profile_picture") or None,
            is_approved=None if is_approved is None else bool(is_approved),
            linked_directory_marker=LinkMarker.from_payload(
                payload, ACCOUNT_MARKER_ID_KEYS, ACCOUNT_MARKER_LABEL_KEYS
            ),
        )

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.username or self.email

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "role": self.role.value if self.role else None,
            "is_active": self.is_active,
            "must_change_password": self.must_change_password,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "display_name": self.display_name,
            "photo_ref": self.photo_ref,
            "is_approved": self.is_approved,
            "linked_directory_marker": self.linked_directory_marker.to_dict(),
        }


# ==================== UNIFIED VIEW ====================

@dataclass
class UnifiedPersonView:
    """One entry per real-world person, rebuilt on every reconciliation pass."""
    identity_key: str
    display_name: str
    provenance: Provenance
    record_id: Optional[str]
    designation: str = ""
    subject: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    photo_ref: Optional[str] = None
    directory_id: Optional[str] = None
    account_id: Optional[str] = None
    username: str = ""
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    linked: bool = False

    @property
    def is_matched(self) -> bool:
        return self.directory_id is not None and self.account_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "display_name": self.display_name,
            "designation": self.designation,
            "subject": self.subject,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "photo_ref": self.photo_ref,
            "provenance": self.provenance.value,
            "record_id": self.record_id,
            "directory_id": self.directory_id,
            "account_id": self.account_id,
            "username": self.username,
            "role": self.role.value if self.role else None,
            "is_active": self.is_active,
            "linked": self.linked,
        }


# ==================== SNAPSHOT ====================

@dataclass
class PersonnelSnapshot:
    """Both store lists as fetched together for one rebuild."""
    directory_records: List[DirectoryRecord]
    account_records: List[AccountRecord]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def find_directory(self, record_id: Any) -> Optional[DirectoryRecord]:
        target = normalize_id(record_id)
        for record in self.directory_records:
            if target is not None and record.id == target:
                return record
        return None

    def find_account(self, record_id: Any) -> Optional[AccountRecord]:
        target = normalize_id(record_id)
        for record in self.account_records:
            if target is not None and record.id == target:
                return record
        return None


# ==================== CREDENTIALS ====================

class OneTimeCredential:
    """
    Temporary password returned by create/reset.

    The secret can be revealed exactly once; repr/str never show it.
    """

    __slots__ = ("_secret", "_revealed")

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("A one-time credential needs a non-empty secret")
        self._secret = secret
        self._revealed = False

    @property
    def revealed(self) -> bool:
        return self._revealed

    def reveal(self) -> str:
        from .errors import CredentialAlreadyRevealedError

        if self._revealed:
            raise CredentialAlreadyRevealedError("Temporary password was already displayed")
        self._revealed = True
        secret, self._secret = self._secret, ""
        return secret

    def __repr__(self) -> str:
        state = "revealed" if self._revealed else "sealed"
        return f"OneTimeCredential(<{state}>)"

    __str__ = __repr__


# ==================== OPERATION RESULTS ====================

@dataclass
class LinkResult:
    """Result of binding a directory record to an account."""
    teacher_id: str
    user_id: str
    linked: bool
    verified: bool
    linked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "teacher_id": self.teacher_id,
            "user_id": self.user_id,
            "linked": self.linked,
            "verified": self.verified,
            "linked_at": self.linked_at.isoformat(),
        }


@dataclass
class ProvisionResult:
    """Result of account creation. The credential is revealed by to_dict()."""
    account: AccountRecord
    credential: Optional[OneTimeCredential] = None
    teacher_id: Optional[str] = None
    student_id: Optional[str] = None
    linked: bool = False
    link_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "account": self.account.to_dict(),
            "temp_password": self.credential.reveal() if self.credential else None,
        }
        if self.teacher_id is not None:
            data["teacher_id"] = self.teacher_id
        if self.student_id is not None:
            data["student_id"] = self.student_id
        if self.teacher_id is not None or self.student_id is not None:
            data["linked"] = self.linked
            data["link_error"] = self.link_error
        return data


@dataclass
class CredentialIssue:
    """Result of a password reset."""
    account_id: str
    credential: OneTimeCredential
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "temp_password": self.credential.reveal(),
            "issued_at": self.issued_at.isoformat(),
        }
