"""
Personnel - API Router

Provides REST API endpoints for the personnel console:
- GET    /api/personnel/status - Module status
- GET    /api/personnel/unified - Deduplicated personnel view
- PATCH  /api/personnel/unified/{identity_key} - Edit via provenance store
- DELETE /api/personnel/unified/{identity_key} - Delete via provenance store
- GET    /api/personnel/eligible - Unlinked teachers and accounts
- POST   /api/personnel/link - Bind a teacher to an account
- POST   /api/personnel/teachers - Create directory record
- PUT    /api/personnel/teachers/{id} - Update directory record
- DELETE /api/personnel/teachers/{id} - Delete directory record
- GET    /api/personnel/teachers/{id}/account-draft - Prefilled account fields
- POST   /api/personnel/teachers/{id}/account - Create account and link it
- POST   /api/personnel/students/{id}/account - Create Student account and link it
- POST   /api/personnel/accounts - Create account
- PATCH  /api/personnel/accounts/{id}/reset-password - Issue new temporary password
- PATCH  /api/personnel/accounts/{id}/active - Activate / deactivate
- DELETE /api/personnel/accounts/{id} - Delete account
- GET    /api/personnel/approvals - Staff accounts awaiting approval
- PATCH  /api/personnel/approvals/{id} - Approve or reject

Every mutation answers with the state rebuilt right after it. Failed
mutations carry that state in the error body.
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Body, Depends, Header, Query
from pydantic import BaseModel, Field

from config import get_settings
from utils.validation_errors import http_error_for, raise_invalid_parameter, validate_required_id

from .errors import PersonnelError
from .models import Role
from .reconciliation import ALL_ROLES
from .service import PersonnelService

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/personnel", tags=["Personnel"])


# ==================== DEPENDENCIES ====================

async def get_personnel_service() -> AsyncIterator[PersonnelService]:
    """One service per request; store connections are closed afterwards."""
    service = PersonnelService.from_settings(get_settings())
    try:
        yield service
    finally:
        await service.aclose()


def get_operator(x_operator: Optional[str] = Header(None)) -> str:
    """Operator name recorded in the audit trail."""
    return (x_operator or "").strip() or "admin"


def parse_roles_query(roles: Optional[str]):
    """'all', a comma-separated role list, or nothing (Teacher-like)."""
    if roles is None or not roles.strip():
        return None
    if roles.strip().lower() == ALL_ROLES:
        return ALL_ROLES
    names = [r.strip() for r in roles.split(",") if r.strip()]
    known = {r.value.lower() for r in Role}
    for name in names:
        if name.lower() not in known:
            raise_invalid_parameter("roles", f"Unknown role {name!r}", roles)
    return names


# ==================== REQUEST MODELS ====================

class LinkRequest(BaseModel):
    """Request model for binding a teacher to an account"""
    teacher_id: str = Field(..., min_length=1, description="Directory record id")
    user_id: str = Field(..., min_length=1, description="Account id")


class ActiveRequest(BaseModel):
    is_active: bool


class ApprovalDecisionRequest(BaseModel):
    is_approved: bool


# ==================== ENDPOINTS ====================

@router.get("/status")
async def get_personnel_status():
    """
    Get personnel module status.
    Does not contact the stores.
    """
    settings = get_settings()
    return {
        "status": "ok",
        "module": "personnel",
        "version": settings.API_VERSION,
        "store_api_base": settings.STORE_API_BASE,
        "features": {
            "unified_view": True,
            "linkage": True,
            "provisioning": True,
            "directory_crud": True,
            "staff_approvals": True,
            "student_accounts": True,
        }
    }


@router.get("/unified")
async def get_unified_view(
    q: str = Query("", description="Search name, subject, email, designation or phone"),
    designation: Optional[str] = Query(None),
    roles: Optional[str] = Query(None, description="'all' or comma-separated roles; default Teacher"),
    service: PersonnelService = Depends(get_personnel_service)
):
    """
    Deduplicated view of both stores, matched by email.

    Entries carry their provenance; edits and deletes go to that store.
    """
    role_filter = parse_roles_query(roles)
    try:
        return await service.unified_view(role_filter=role_filter, query=q, designation=designation)
    except PersonnelError as e:
        raise http_error_for(e)


@router.patch("/unified/{identity_key}")
async def update_unified_entry(
    identity_key: str,
    fields: dict = Body(...),
    roles: Optional[str] = Query(None, description="Role filter of the view the entry came from"),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    role_filter = parse_roles_query(roles)
    try:
        outcome = await service.update_person(
            identity_key, fields, performed_by=operator, role_filter=role_filter
        )
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.delete("/unified/{identity_key}")
async def delete_unified_entry(
    identity_key: str,
    roles: Optional[str] = Query(None, description="Role filter of the view the entry came from"),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    role_filter = parse_roles_query(roles)
    try:
        outcome = await service.delete_person(identity_key, performed_by=operator, role_filter=role_filter)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.get("/eligible")
async def get_eligible_pools(
    teacher_q: str = Query("", description="Search teachers by name, email or phone"),
    account_q: str = Query("", description="Search accounts by username, email, phone or name"),
    service: PersonnelService = Depends(get_personnel_service)
):
    """Teachers with no login and Teacher-like accounts with no teacher."""
    try:
        return await service.eligible_pools(teacher_query=teacher_q, account_query=account_q)
    except PersonnelError as e:
        raise http_error_for(e)


@router.post("/link")
async def link_teacher(
    request: LinkRequest,
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    """
    Bind a directory record to an account.

    **Errors:**
    - 404: either record no longer exists
    - 409: either side is already linked
    - 422: account is not Teacher-like
    - 503: store unreachable
    """
    try:
        outcome = await service.link(request.teacher_id, request.user_id, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


# ==================== DIRECTORY ====================

@router.post("/teachers", status_code=201)
async def create_teacher(
    fields: dict = Body(...),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    try:
        outcome = await service.create_teacher(fields, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.put("/teachers/{teacher_id}")
async def update_teacher(
    teacher_id: str,
    fields: dict = Body(...),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    teacher_id = validate_required_id(teacher_id, "teacher_id")
    try:
        outcome = await service.update_teacher(teacher_id, fields, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.delete("/teachers/{teacher_id}")
async def delete_teacher(
    teacher_id: str,
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    teacher_id = validate_required_id(teacher_id, "teacher_id")
    try:
        outcome = await service.delete_teacher(teacher_id, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.get("/teachers/{teacher_id}/account-draft")
async def get_account_draft(
    teacher_id: str,
    service: PersonnelService = Depends(get_personnel_service)
):
    """Prefilled Teacher account fields for a directory record."""
    try:
        return await service.account_draft(teacher_id)
    except PersonnelError as e:
        raise http_error_for(e)


@router.post("/teachers/{teacher_id}/account", status_code=201)
async def create_account_for_teacher(
    teacher_id: str,
    fields: Optional[dict] = Body(None),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    """
    Create a Teacher account from a directory record and link the two.

    A link failure after creation is reported in result.link_error; the
    temporary password is still returned.
    """
    try:
        outcome = await service.create_and_link(teacher_id, fields or {}, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


# ==================== STUDENTS ====================

@router.post("/students/{student_id}/account", status_code=201)
async def create_account_for_student(
    student_id: str,
    fields: Optional[dict] = Body(None),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    """Create a Student account for an unlinked roster entry and link the two."""
    try:
        outcome = await service.create_and_link_student(student_id, fields or {}, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


# ==================== ACCOUNTS ====================

@router.post("/accounts", status_code=201)
async def create_account(
    fields: dict = Body(...),
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    """
    Create a login account.

    **Rules:**
    - username and role are required
    - without a password, a temporary one is generated and shown once
    """
    try:
        outcome = await service.create_account(fields, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.patch("/accounts/{account_id}/reset-password")
async def reset_password(
    account_id: str,
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    try:
        outcome = await service.reset_password(account_id, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.patch("/accounts/{account_id}/active")
async def set_account_active(
    account_id: str,
    request: ActiveRequest,
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    try:
        outcome = await service.set_account_active(account_id, request.is_active, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: str,
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    try:
        outcome = await service.delete_account(account_id, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()


# ==================== STAFF APPROVALS ====================

@router.get("/approvals")
async def list_pending_approvals(
    service: PersonnelService = Depends(get_personnel_service)
):
    try:
        pending = await service.pending_approvals()
    except PersonnelError as e:
        raise http_error_for(e)
    return {"pending": [a.to_dict() for a in pending], "count": len(pending)}


@router.patch("/approvals/{account_id}")
async def decide_approval(
    account_id: str,
    request: ApprovalDecisionRequest,
    operator: str = Depends(get_operator),
    service: PersonnelService = Depends(get_personnel_service)
):
    try:
        outcome = await service.decide_approval(account_id, request.is_approved, performed_by=operator)
    except PersonnelError as e:
        raise http_error_for(e)
    return outcome.to_dict()
