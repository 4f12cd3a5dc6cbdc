"""
Integration Tests for PersonnelService

Runs the service against the in-memory FakeStore (see conftest.py):
- Unified view from both stores
- Rebuild after every mutation, on success and on failure
- Eligible pools shrink after a link
- Provisioning with one-time passwords
- Edits and deletes routed by provenance

Run with: pytest tests/test_personnel_service.py -v
"""

import pytest

from personnel.errors import (
    ConflictError,
    DuplicateUsernameError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from personnel.models import Provenance, Role
from personnel.reconciliation import ALL_ROLES

EMAIL = "jane@greenfield.edu.au"


class TestUnifiedView:
    """Test reads over both stores."""

    @pytest.mark.asyncio
    async def test_merges_and_filters(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL, designation="HOD")
        store.add_teacher(id=2, full_name="Bob Ray", contact_email="bob@greenfield.edu.au")
        store.add_user(id=10, username="jdoe", email=EMAIL.upper())
        store.add_user(id=11, username="kid", email="kid@greenfield.edu.au", role="Student")

        data = await service.unified_view()

        assert data["summary"]["total"] == 2
        assert data["summary"]["matched_pairs"] == 1
        assert data["summary"]["excluded_accounts"] == 1
        assert data["designations"] == ["HOD", "Teacher"]

        jane = next(p for p in data["people"] if p["identity_key"] == EMAIL)
        assert jane["provenance"] == "account"
        assert jane["designation"] == "HOD"

    @pytest.mark.asyncio
    async def test_search_and_role_filter(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.add_user(id=11, username="kid", email="kid@greenfield.edu.au", role="Student")

        data = await service.unified_view(role_filter="all", query="kid")

        assert [p["username"] for p in data["people"]] == ["kid"]
        assert data["summary"]["total"] == 2

    @pytest.mark.asyncio
    async def test_fetches_both_stores(self, service, store):
        await service.unified_view()
        assert sorted(store.calls("GET")) == ["teachers/", "users/"]

    @pytest.mark.asyncio
    async def test_store_outage_is_network_error(self, service, store):
        store.offline = True
        with pytest.raises(NetworkError):
            await service.unified_view()

    @pytest.mark.asyncio
    async def test_eligible_pools(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe")
        store.add_teacher(id=2, full_name="Bound", user=99)
        store.add_user(id=10, username="jdoe")
        store.add_user(id=11, username="admin", role="Admin")

        pools = await service.eligible_pools(teacher_query="jane")

        assert [t["id"] for t in pools["teachers"]] == ["1"]
        assert [a["id"] for a in pools["accounts"]] == ["10"]
        assert pools["counts"] == {"teachers": 1, "accounts": 1}


class TestLinking:
    """Test link with rebuild."""

    @pytest.fixture
    def seeded(self, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.add_user(id=10, username="jdoe")
        return store

    @pytest.mark.asyncio
    async def test_link_shrinks_both_pools(self, service, seeded):
        outcome = await service.link("1", "10")

        assert outcome.result.verified is True
        assert seeded.teachers[1]["user"] == 10
        assert outcome.state.eligible_teachers == []
        assert outcome.state.eligible_accounts == []
        assert outcome.rebuild_error is None

    @pytest.mark.asyncio
    async def test_account_excluded_before_store_derives_marker(self, service, seeded):
        seeded.derive_account_marker = False

        outcome = await service.link("1", "10")

        assert "teacher" not in seeded.users[10]
        assert outcome.state.eligible_accounts == []

    @pytest.mark.asyncio
    async def test_unconfirmed_link_is_not_verified(self, service, seeded):
        seeded.echo_link = False
        outcome = await service.link("1", "10")
        assert outcome.result.verified is False

    @pytest.mark.asyncio
    async def test_double_link_carries_rebuilt_state(self, service, seeded):
        seeded.teachers[1]["user"] = 55

        with pytest.raises(ConflictError) as exc:
            await service.link("1", "10")

        assert exc.value.state is not None
        assert [a.id for a in exc.value.state.eligible_accounts] == ["10"]
        assert seeded.calls("POST") == []

    @pytest.mark.asyncio
    async def test_stale_teacher_not_found(self, service, seeded):
        with pytest.raises(NotFoundError) as exc:
            await service.link("404", "10")
        assert exc.value.state is not None

    @pytest.mark.asyncio
    async def test_store_rejects_link(self, service, seeded):
        seeded.fail_next("POST", "teachers/1/link-user", 400, {"detail": "Teacher is already linked to a user."})

        with pytest.raises(ConflictError) as exc:
            await service.link("1", "10")

        # Rebuild ran after the failure
        assert seeded.calls("GET").count("teachers/") == 2
        assert exc.value.state is not None

    @pytest.mark.asyncio
    async def test_outage_leaves_no_state(self, service, seeded):
        seeded.offline = True
        with pytest.raises(NetworkError) as exc:
            await service.link("1", "10")
        assert exc.value.state is None


class TestProvisioning:
    """Test account provisioning with rebuild."""

    @pytest.mark.asyncio
    async def test_create_account_returns_temp_password(self, service, store):
        outcome = await service.create_account({"username": "jdoe", "role": "Teacher", "email": EMAIL})

        data = outcome.to_dict()
        assert data["result"]["temp_password"] == "Temp-0001"
        assert data["result"]["account"]["username"] == "jdoe"
        assert [p["username"] for p in data["state"]["people"]] == ["jdoe"]

    @pytest.mark.asyncio
    async def test_duplicate_username(self, service, store):
        store.add_user(id=10, username="JDoe")

        with pytest.raises(DuplicateUsernameError) as exc:
            await service.create_account({"username": "jdoe", "role": "Teacher"})

        assert exc.value.state is not None
        assert store.calls("POST") == []

    @pytest.mark.asyncio
    async def test_duplicate_reported_by_store(self, service, store):
        store.fail_next("POST", "users", 400, {"username": ["A user with that username already exists."]})

        with pytest.raises(DuplicateUsernameError):
            await service.create_account({"username": "fresh", "role": "Teacher"})

    @pytest.mark.asyncio
    async def test_missing_fields(self, service, store):
        with pytest.raises(ValidationError) as exc:
            await service.create_account({"role": "Teacher"})
        assert exc.value.field == "username"

    @pytest.mark.asyncio
    async def test_temp_password_reissued_when_store_omits_it(self, service, store):
        store.omit_temp_password = True

        outcome = await service.create_account({"username": "jdoe", "role": "Teacher"})

        account_id = outcome.result.account.id
        assert f"users/{account_id}/reset-password/" in store.calls("PATCH")
        assert outcome.result.credential.reveal() == "Temp-0001"

    @pytest.mark.asyncio
    async def test_reset_password_is_repeatable(self, service, store):
        store.add_user(id=10, username="jdoe")

        first = await service.reset_password("10")
        second = await service.reset_password("10")

        assert first.result.credential.reveal() != second.result.credential.reveal()

    @pytest.mark.asyncio
    async def test_reset_unknown_account(self, service, store):
        with pytest.raises(NotFoundError):
            await service.reset_password("999")

    @pytest.mark.asyncio
    async def test_rebuild_failure_after_success(self, service, store):
        store.add_user(id=10, username="jdoe")
        store.fail_next("GET", "teachers", 503, {"detail": "Service unavailable"})

        outcome = await service.reset_password("10")

        assert outcome.state is None
        assert outcome.rebuild_error == "Service unavailable"
        assert outcome.result.credential.reveal() == "Temp-0001"

    @pytest.mark.asyncio
    async def test_deactivate(self, service, store):
        store.add_user(id=10, username="jdoe", email=EMAIL)

        outcome = await service.set_account_active("10", False)

        assert store.users[10]["is_active"] is False
        assert outcome.state.reconciliation.views[0].is_active is False

    @pytest.mark.asyncio
    async def test_delete_account(self, service, store):
        store.add_user(id=10, username="jdoe")

        outcome = await service.delete_account("10")

        assert 10 not in store.users
        assert outcome.state.reconciliation.views == []

    @pytest.mark.asyncio
    async def test_create_and_link(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)

        outcome = await service.create_and_link("1", {})

        result = outcome.result
        assert result.linked is True
        assert result.account.username == "janedoe"
        assert store.teachers[1]["user"] == int(result.account.id)
        assert outcome.state.eligible_teachers == []
        assert outcome.state.reconciliation.summary.matched_pairs == 1

    @pytest.mark.asyncio
    async def test_create_and_link_reports_link_failure(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.fail_next("POST", "teachers/1/link-user", 503, {"detail": "down"})

        outcome = await service.create_and_link("1", {"username": "jane"})

        assert outcome.result.linked is False
        assert outcome.result.link_error == "down"
        assert outcome.to_dict()["result"]["temp_password"] == "Temp-0001"
        assert [a.username for a in outcome.state.eligible_accounts] == ["jane"]

    @pytest.mark.asyncio
    async def test_account_draft(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)

        draft = await service.account_draft("1")

        assert draft["username"] == "janedoe"
        assert draft["role"] == "Teacher"
        assert draft["already_linked"] is False

    @pytest.mark.asyncio
    async def test_approvals(self, service, store):
        store.add_staff(id=7, username="staff1")
        store.add_staff(id=8, username="staff2", is_approved=True)

        pending = await service.pending_approvals()
        assert [a.id for a in pending] == ["7"]

        await service.decide_approval("7", True)
        assert store.staff[7]["is_approved"] is True


class TestDirectoryMaintenance:
    """Test directory CRUD and provenance routing."""

    @pytest.mark.asyncio
    async def test_create_teacher(self, service, store):
        outcome = await service.create_teacher({"full_name": "Jane Doe", "contact_email": EMAIL, "designation": ""})

        assert outcome.result.full_name == "Jane Doe"
        assert len(store.teachers) == 1
        assert [t.full_name for t in outcome.state.eligible_teachers] == ["Jane Doe"]
        posted = next(iter(store.teachers.values()))
        assert posted["designation"] == ""

    @pytest.mark.asyncio
    async def test_create_teacher_requires_name(self, service, store):
        with pytest.raises(ValidationError) as exc:
            await service.create_teacher({"full_name": "  "})
        assert exc.value.field == "full_name"
        assert store.calls("POST") == []

    @pytest.mark.asyncio
    async def test_update_teacher(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe")

        await service.update_teacher("1", {"full_name": "Jane Smith"})

        assert store.teachers[1]["full_name"] == "Jane Smith"
        assert "teachers/1/" in store.calls("PUT")

    @pytest.mark.asyncio
    async def test_delete_teacher(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe")
        await service.delete_teacher("1")
        assert store.teachers == {}

    @pytest.mark.asyncio
    async def test_update_person_routes_to_account_store(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.add_user(id=10, username="jdoe", email=EMAIL)

        outcome = await service.update_person(EMAIL, {"phone": "0400 000 000", "designation": "HOD"})

        assert outcome.result["provenance"] == Provenance.ACCOUNT.value
        assert outcome.result["updated"] == ["phone"]
        assert store.users[10]["phone"] == "0400 000 000"
        assert "designation" not in store.users[10]

    @pytest.mark.asyncio
    async def test_update_person_routes_to_directory_store(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe")

        await service.update_person("directory:1", {"designation": "HOD"})

        assert store.teachers[1]["designation"] == "HOD"
        assert "teachers/1/" in store.calls("PATCH")

    @pytest.mark.asyncio
    async def test_update_person_without_editable_fields(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe")
        with pytest.raises(ValidationError):
            await service.update_person("directory:1", {"username": "nope"})

    @pytest.mark.asyncio
    async def test_unknown_identity_key(self, service, store):
        with pytest.raises(NotFoundError):
            await service.delete_person("nobody@greenfield.edu.au")

    @pytest.mark.asyncio
    async def test_delete_person_uses_provenance(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.add_user(id=10, username="jdoe", email=EMAIL)

        outcome = await service.delete_person(EMAIL)

        assert 10 not in store.users
        assert 1 in store.teachers
        assert outcome.state.reconciliation.views[0].provenance == Provenance.DIRECTORY


class TestUnifiedEntryRouting:
    """Test that unified-entry edits reach the record the operator was shown."""

    @pytest.mark.asyncio
    async def test_delete_follows_the_teacher_view(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.add_user(id=10, username="jstudent", email=EMAIL, role="Student")

        view = await service.unified_view()
        assert [(p["provenance"], p["record_id"]) for p in view["people"]] == [("directory", "1")]

        outcome = await service.delete_person(EMAIL)

        assert outcome.result == {"provenance": "directory", "record_id": "1", "deleted": True}
        assert 10 in store.users
        assert 1 not in store.teachers

    @pytest.mark.asyncio
    async def test_all_roles_view_routes_to_account(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_email=EMAIL)
        store.add_user(id=10, username="jstudent", email=EMAIL, role="Student")

        outcome = await service.update_person(EMAIL, {"phone": "0400 111 222"}, role_filter=ALL_ROLES)

        assert outcome.result["provenance"] == Provenance.ACCOUNT.value
        assert store.users[10]["phone"] == "0400 111 222"
        assert store.teachers[1]["contact_phone"] == ""

    @pytest.mark.asyncio
    async def test_entry_without_record_id(self, service, store):
        store.users[0] = {"username": "ghost", "email": "", "role": "Teacher", "is_active": True}

        view = await service.unified_view()
        assert [p["identity_key"] for p in view["people"]] == ["account:#0"]

        with pytest.raises(ValidationError) as exc:
            await service.delete_person("account:#0")
        with pytest.raises(ValidationError):
            await service.update_person("account:#0", {"phone": "0400 111 222"})

        assert exc.value.state is not None
        assert store.calls("DELETE") == []
        assert store.calls("PATCH") == []

    @pytest.mark.asyncio
    async def test_invalid_account_email(self, service, store):
        store.add_user(id=10, username="jdoe", email=EMAIL)

        with pytest.raises(ValidationError) as exc:
            await service.update_person(EMAIL, {"email": "not-an-email"})

        assert exc.value.field == "email"
        assert store.calls("PATCH") == []

    @pytest.mark.asyncio
    async def test_invalid_directory_fields(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe")

        with pytest.raises(ValidationError) as exc:
            await service.update_person("directory:1", {"contact_email": "nope"})
        assert exc.value.field == "contact_email"

        with pytest.raises(ValidationError) as exc:
            await service.update_person("directory:1", {"full_name": "   "})
        assert exc.value.field == "full_name"

        assert store.calls("PATCH") == []

    @pytest.mark.asyncio
    async def test_cleared_phone_is_sent_empty(self, service, store):
        store.add_teacher(id=1, full_name="Jane Doe", contact_phone="0400 000 000")

        outcome = await service.update_person("directory:1", {"contact_phone": ""})

        assert outcome.result["updated"] == ["contact_phone"]
        assert store.teachers[1]["contact_phone"] == ""


class TestStudentAccounts:
    """Test creating a Student login bound to a roster entry."""

    @pytest.mark.asyncio
    async def test_create_and_link_student(self, service, store):
        store.add_student(id=3, full_name="Sam Lee", contact_email="sam@greenfield.edu.au")

        outcome = await service.create_and_link_student("3", {})

        data = outcome.result.to_dict()
        assert data["student_id"] == "3"
        assert data["linked"] is True
        assert data["temp_password"] == "Temp-0001"
        assert data["account"]["username"] == "samlee"
        assert outcome.result.account.role == Role.STUDENT
        assert str(store.students[3]["user"]) == outcome.result.account.id
        assert "students/3/link-user/" in store.calls("POST")

    @pytest.mark.asyncio
    async def test_linked_student_is_not_offered(self, service, store):
        store.add_student(id=3, full_name="Sam Lee", user=50)

        with pytest.raises(NotFoundError) as exc:
            await service.create_and_link_student("3", {})

        assert exc.value.field == "student_id"
        assert store.calls("POST") == []

    @pytest.mark.asyncio
    async def test_link_failure_keeps_the_account(self, service, store):
        store.add_student(id=3, full_name="Sam Lee")
        store.fail_next("POST", "students/3/link-user", 500, {"detail": "boom"})

        outcome = await service.create_and_link_student("3", {})

        assert outcome.result.linked is False
        assert outcome.result.link_error == "boom"
        assert outcome.result.credential is not None
        assert [u["username"] for u in store.users.values()] == ["samlee"]

    @pytest.mark.asyncio
    async def test_duplicate_username(self, service, store):
        store.add_student(id=3, full_name="Sam Lee")
        store.add_user(id=10, username="SamLee", role="Student")

        with pytest.raises(DuplicateUsernameError):
            await service.create_and_link_student("3", {})

        assert store.students[3]["user"] is None
