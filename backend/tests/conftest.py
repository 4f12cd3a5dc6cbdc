"""
Shared fixtures for personnel tests.

FakeStore is an in-memory stand-in for both remote stores, served through
httpx.MockTransport so the real store clients run end to end.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from personnel.clients import AccountStoreClient, DirectoryStoreClient, StudentRosterClient
from personnel.service import PersonnelService

BASE_URL = "http://store.test/api/"


class FakeStore:
    """In-memory Directory + Account store speaking the stores' JSON contract."""

    def __init__(self):
        self.teachers: Dict[int, Dict[str, Any]] = {}
        self.users: Dict[int, Dict[str, Any]] = {}
        self.staff: Dict[int, Dict[str, Any]] = {}
        self.students: Dict[int, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, str]] = []
        self.failures: List[Tuple[str, str, int, Any]] = []
        self.offline = False
        # Account-side marker mirrors the directory link on the next read
        self.derive_account_marker = True
        self.echo_link = True
        self.omit_temp_password = False
        self._next_id = 100
        self._passwords = 0

    # ==================== SEEDING ====================

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_teacher(self, **fields) -> Dict[str, Any]:
        record = {
            "id": fields.pop("id", None) or self._new_id(),
            "full_name": "",
            "designation": "",
            "contact_email": "",
            "contact_phone": "",
            "user": None,
        }
        record.update(fields)
        self.teachers[record["id"]] = record
        return record

    def add_user(self, **fields) -> Dict[str, Any]:
        record = {
            "id": fields.pop("id", None) or self._new_id(),
            "username": "",
            "email": "",
            "phone": "",
            "role": "Teacher",
            "is_active": True,
            "must_change_password": False,
        }
        record.update(fields)
        self.users[record["id"]] = record
        return record

    def add_staff(self, **fields) -> Dict[str, Any]:
        record = {"id": fields.pop("id", None) or self._new_id(), "is_approved": False}
        record.update(fields)
        self.staff[record["id"]] = record
        return record

    def add_student(self, **fields) -> Dict[str, Any]:
        record = {
            "id": fields.pop("id", None) or self._new_id(),
            "full_name": "",
            "contact_email": "",
            "contact_phone": "",
            "user": None,
        }
        record.update(fields)
        self.students[record["id"]] = record
        return record

    def fail_next(self, method: str, path_prefix: str, status_code: int, body: Any = None):
        self.failures.append((method, path_prefix, status_code, body))

    def calls(self, method: str) -> List[str]:
        return [path for m, path in self.requests if m == method]

    # ==================== TRANSPORT ====================

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("store offline", request=request)

        path = request.url.path
        if path.startswith("/api/"):
            path = path[len("/api/"):]
        self.requests.append((request.method, path))

        for failure in list(self.failures):
            method, prefix, status_code, body = failure
            if method == request.method and path.startswith(prefix):
                self.failures.remove(failure)
                return httpx.Response(status_code, json=body if body is not None else {"detail": "failure"})

        body = json.loads(request.content) if request.content else {}
        parts = [p for p in path.split("/") if p]
        resource, rest = parts[0], parts[1:]

        if resource == "teachers":
            return self._teachers(request, rest, body)
        if resource == "users":
            return self._users(request, rest, body)
        if resource == "approve_staff":
            return self._approvals(request, rest, body)
        if resource == "students":
            return self._students(request, rest, body)
        return httpx.Response(404, json={"detail": "Not found."})

    def _teachers(self, request, rest, body):
        if not rest:
            if request.method == "GET":
                return httpx.Response(200, json=list(self.teachers.values()))
            record = self.add_teacher(**body)
            return httpx.Response(201, json=record)

        teacher = self.teachers.get(int(rest[0]))
        if teacher is None:
            return httpx.Response(404, json={"detail": "Not found."})

        if rest[1:] == ["link-user"]:
            if teacher.get("user"):
                return httpx.Response(400, json={"detail": "Teacher is already linked to a user."})
            user = self.users.get(int(body["user_id"]))
            if user is None:
                return httpx.Response(404, json={"detail": "User not found."})
            teacher["user"] = user["id"]
            teacher["user_username"] = user["username"]
            if self.derive_account_marker:
                user["teacher"] = teacher["id"]
            if self.echo_link:
                return httpx.Response(200, json=teacher)
            return httpx.Response(200, json={"status": "linked"})

        if request.method in ("PUT", "PATCH"):
            teacher.update(body)
            return httpx.Response(200, json=teacher)
        if request.method == "DELETE":
            del self.teachers[teacher["id"]]
            return httpx.Response(204)
        return httpx.Response(405)

    def _users(self, request, rest, body):
        if not rest:
            if request.method == "GET":
                role = request.url.params.get("role")
                users = [u for u in self.users.values() if role is None or u.get("role") == role]
                return httpx.Response(200, json=users)
            wanted = body.get("username", "").lower()
            if any(u["username"].lower() == wanted for u in self.users.values()):
                return httpx.Response(400, json={"username": ["A user with that username already exists."]})
            password = body.pop("password", None)
            record = self.add_user(**body)
            response = dict(record)
            if password is None and not self.omit_temp_password:
                response["temp_password"] = self._issue_password()
            return httpx.Response(201, json=response)

        user = self.users.get(int(rest[0]))
        if user is None:
            return httpx.Response(404, json={"detail": "Not found."})

        if rest[1:] == ["reset-password"]:
            return httpx.Response(200, json={"temp_password": self._issue_password()})
        if request.method == "PATCH":
            user.update(body)
            return httpx.Response(200, json=user)
        if request.method == "DELETE":
            del self.users[user["id"]]
            return httpx.Response(204)
        return httpx.Response(405)

    def _approvals(self, request, rest, body):
        if not rest:
            return httpx.Response(200, json=list(self.staff.values()))
        staff = self.staff.get(int(rest[0]))
        if staff is None:
            return httpx.Response(404, json={"detail": "Not found."})
        staff.update(body)
        return httpx.Response(200, json=staff)

    def _students(self, request, rest, body):
        if not rest:
            students = list(self.students.values())
            if request.url.params.get("linked") == "false":
                students = [s for s in students if not s.get("user")]
            return httpx.Response(200, json=students)

        student = self.students.get(int(rest[0]))
        if student is None:
            return httpx.Response(404, json={"detail": "Not found."})
        if rest[1:] == ["link-user"]:
            if student.get("user"):
                return httpx.Response(400, json={"detail": "Student is already linked to a user."})
            student["user"] = int(body["user_id"])
            return httpx.Response(200, json=student)
        return httpx.Response(405)

    def _issue_password(self) -> str:
        self._passwords += 1
        return f"Temp-{self._passwords:04d}"


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def transport(store):
    return httpx.MockTransport(store.handler)


@pytest.fixture
def directory_client(transport):
    return DirectoryStoreClient(BASE_URL, transport=transport)


@pytest.fixture
def account_client(transport):
    return AccountStoreClient(BASE_URL, transport=transport)


@pytest.fixture
def student_client(transport):
    return StudentRosterClient(BASE_URL, transport=transport)


@pytest.fixture
def service(directory_client, account_client, student_client):
    return PersonnelService(directory_client, account_client, students=student_client)
