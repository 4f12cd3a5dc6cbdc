"""
Personnel - Audit Events

Audit trail for linkage and provisioning, written to the application log with
structured `extra` fields.

SECURITY: temporary passwords, emails and phone numbers are never logged.
Only record ids, roles and operation metadata are kept.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any

logger = logging.getLogger(__name__)


class PersonnelAuditEvent:
    """Audit event types for personnel operations."""
    LINKED = "personnel.linked"
    LINK_FAILED = "personnel.link_failed"
    ACCOUNT_CREATED = "personnel.account_created"
    ACCOUNT_CREATE_FAILED = "personnel.account_create_failed"
    PASSWORD_RESET = "personnel.password_reset"
    ACCOUNT_ACTIVATED = "personnel.account_activated"
    ACCOUNT_DEACTIVATED = "personnel.account_deactivated"
    ACCOUNT_DELETED = "personnel.account_deleted"
    APPROVAL_DECIDED = "personnel.approval_decided"
    TEACHER_CREATED = "personnel.teacher_created"
    TEACHER_UPDATED = "personnel.teacher_updated"
    TEACHER_DELETED = "personnel.teacher_deleted"


PII_FIELDS = (
    "password", "temp_password", "email", "contact_email",
    "phone", "contact_phone", "full_name", "name",
)


def sanitize_details(details: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in details.items() if k not in PII_FIELDS}


def log_personnel_event(
    event_type: str,
    performed_by: str,
    details: Dict[str, Any],
    success: bool = True
):
    """Log a personnel operation for the audit trail."""
    log_entry = {
        "event": event_type,
        "performed_by": performed_by,
        "details": sanitize_details(details),
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

    if success:
        logger.info(f"Personnel event: {event_type} by {performed_by}", extra=log_entry)
    else:
        logger.warning(f"Personnel event FAILED: {event_type} by {performed_by}", extra=log_entry)
