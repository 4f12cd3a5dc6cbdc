"""
Personnel - Store Clients

HTTP clients for the two external stores:
- Directory Store: teacher professional records (teachers/)
- Account Store: login accounts (users/) and staff approvals (approve_staff/)
- Student roster (students/), used only to bind new Student accounts

Responses are mapped onto the personnel error taxonomy:
- timeouts, connection failures, 5xx -> NetworkError
- 404 -> NotFoundError
- 409 -> ConflictError
- 400/422 -> ValidationError (DuplicateUsernameError for taken usernames)
"""

import logging
from typing import Optional, Dict, Any, List

import httpx

from .errors import (
    PersonnelError,
    ValidationError,
    ConflictError,
    NotFoundError,
    NetworkError,
    DuplicateUsernameError,
)
from .models import normalize_id

logger = logging.getLogger(__name__)


# ==================== RESPONSE HELPERS ====================

def take_list(data: Any) -> List[Dict[str, Any]]:
    """Accept a bare list or a paginated {"results": [...]} body."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        results = data.get("results")
        if isinstance(results, list):
            return results
    return []


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        if body.get("detail"):
            return str(body["detail"])
        for key, value in body.items():
            if isinstance(value, list) and value:
                return f"{key}: {value[0]}"
            if isinstance(value, str) and value:
                return f"{key}: {value}"
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return default


def _error_field(body: Any) -> Optional[str]:
    # DRF-style field errors: {"username": ["..."]}
    if isinstance(body, dict):
        for key, value in body.items():
            if key not in ("detail", "non_field_errors") and isinstance(value, (list, str)):
                return key
    return None


def _is_duplicate_username(body: Any) -> bool:
    if not isinstance(body, dict) or "username" not in body:
        return False
    text = str(body["username"]).lower()
    return "exist" in text or "taken" in text or "unique" in text


def error_for_response(response: httpx.Response, action: str) -> PersonnelError:
    """Build the personnel error for a non-success store response."""
    try:
        body = response.json()
    except ValueError:
        body = response.text

    status_code = response.status_code
    message = _error_message(body, f"{action} failed with HTTP {status_code}")
    details = {"status_code": status_code, "action": action}
    if isinstance(body, dict):
        details["body"] = body

    if status_code == 404:
        return NotFoundError(message or "Record no longer exists", details=details)
    if status_code in (400, 409, 422) and _is_duplicate_username(body):
        return DuplicateUsernameError(message, field="username", details=details)
    if status_code == 409:
        return ConflictError(message, field=_error_field(body), details=details)
    if status_code in (400, 422):
        return ValidationError(message, field=_error_field(body), details=details)
    if status_code >= 500:
        return NetworkError(message, details=details)
    return PersonnelError(message, field=_error_field(body), details=details)


# ==================== BASE CLIENT ====================

class StoreClient:
    """
    Thin async JSON client for one remote store.

    Each call is a single request; there are no retries. Timeouts and
    connection errors surface as NetworkError for the caller to re-trigger.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        page_size: int = 1000,
        trailing_slash: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = token if token.startswith("Bearer ") else f"Bearer {token}"

        self.base_url = base_url.rstrip("/") + "/"
        self.page_size = page_size
        self.trailing_slash = trailing_slash
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    def _path(self, *parts: Any) -> str:
        path = "/".join(str(p).strip("/") for p in parts if p is not None and str(p) != "")
        return f"{path}/" if self.trailing_slash else path

    def _item_path(self, resource: str, item_id: Any, *rest: str) -> str:
        """Path of one record; an absent id must never collapse onto the collection."""
        key = normalize_id(item_id)
        if key is None:
            raise ValidationError(f"A {resource} record id is required", field="id")
        return self._path(resource, key, *rest)

    async def _link_user(self, resource: str, record_id: Any, user_id: Any, action: str) -> Optional[Dict[str, Any]]:
        """POST {resource}/{id}/link-user/ {user_id}; "already linked" answers become ConflictError."""
        try:
            return await self._request(
                "POST",
                self._item_path(resource, record_id, "link-user"),
                action,
                json={"user_id": normalize_id(user_id)},
            )
        except ValidationError as e:
            if "already linked" in e.message.lower():
                raise ConflictError(e.message, field=e.field, details=e.details)
            raise

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException:
            logger.error(f"Store request timed out: {method} {path}")
            raise NetworkError(f"{action} timed out", details={"action": action})
        except httpx.RequestError as e:
            logger.error(f"Store request error: {method} {path}: {e}")
            raise NetworkError(f"{action} failed: store unreachable", details={"action": action})

        if response.status_code >= 400:
            error = error_for_response(response, action)
            logger.warning(
                f"Store rejected {method} {path} -> {response.status_code} ({error.code})"
            )
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise NetworkError(f"{action} returned a non-JSON body", details={"action": action})

    async def _list(self, path: str, action: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET a collection, following paginated "next" links."""
        query = {"page_size": self.page_size}
        query.update({k: v for k, v in (params or {}).items() if v is not None})

        data = await self._request("GET", path, action, params=query)
        items = list(take_list(data))
        next_url = data.get("next") if isinstance(data, dict) else None
        seen = set()
        while next_url:
            if next_url in seen:
                logger.warning(f"{action}: store repeated page link {next_url}; stopping")
                break
            seen.add(next_url)
            data = await self._request("GET", next_url, action)
            items.extend(take_list(data))
            next_url = data.get("next") if isinstance(data, dict) else None
        return items


# ==================== DIRECTORY STORE ====================

class DirectoryStoreClient(StoreClient):
    """Client for teacher directory records."""

    def __init__(self, base_url: str, resource: str = "teachers", **kwargs):
        super().__init__(base_url, **kwargs)
        self.resource = resource

    async def list_teachers(self) -> List[Dict[str, Any]]:
        return await self._list(self._path(self.resource), "List teachers")

    async def create_teacher(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", self._path(self.resource), "Create teacher", json=fields)

    async def update_teacher(self, teacher_id: Any, fields: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        method = "PATCH" if partial else "PUT"
        return await self._request(
            method, self._item_path(self.resource, teacher_id), "Update teacher", json=fields
        )

    async def delete_teacher(self, teacher_id: Any) -> None:
        await self._request("DELETE", self._item_path(self.resource, teacher_id), "Delete teacher")

    async def link_user(self, teacher_id: Any, user_id: Any) -> Optional[Dict[str, Any]]:
        """Bind the directory record to an account: POST teachers/{id}/link-user/ {user_id}."""
        return await self._link_user(self.resource, teacher_id, user_id, "Link teacher to user")


class StudentRosterClient(StoreClient):
    """Client for the student roster; only the parts account provisioning needs."""

    def __init__(self, base_url: str, resource: str = "students", **kwargs):
        super().__init__(base_url, **kwargs)
        self.resource = resource

    async def list_unlinked_students(self) -> List[Dict[str, Any]]:
        return await self._list(
            self._path(self.resource), "List unlinked students", params={"linked": "false"}
        )

    async def link_user(self, student_id: Any, user_id: Any) -> Optional[Dict[str, Any]]:
        return await self._link_user(self.resource, student_id, user_id, "Link student to user")


# ==================== ACCOUNT STORE ====================

class AccountStoreClient(StoreClient):
    """Client for login accounts and staff approvals."""

    def __init__(
        self,
        base_url: str,
        resource: str = "users",
        approvals_resource: str = "approve_staff",
        **kwargs
    ):
        super().__init__(base_url, **kwargs)
        self.resource = resource
        self.approvals_resource = approvals_resource

    async def list_users(self, role: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._list(self._path(self.resource), "List users", params={"role": role})

    async def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", self._path(self.resource), "Create user", json=payload)

    async def update_user(self, user_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "PATCH", self._item_path(self.resource, user_id), "Update user", json=fields
        )

    async def delete_user(self, user_id: Any) -> None:
        await self._request("DELETE", self._item_path(self.resource, user_id), "Delete user")

    async def reset_password(self, user_id: Any) -> Dict[str, Any]:
        return await self._request(
            "PATCH", self._item_path(self.resource, user_id, "reset-password"), "Reset password"
        ) or {}

    async def list_approvals(self) -> List[Dict[str, Any]]:
        return await self._list(self._path(self.approvals_resource), "List staff approvals")

    async def decide_approval(self, user_id: Any, approved: bool) -> Optional[Dict[str, Any]]:
        return await self._request(
            "PATCH",
            self._item_path(self.approvals_resource, user_id),
            "Decide staff approval",
            json={"is_approved": approved},
        )
