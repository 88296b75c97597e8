"""Unit tests for auth/guard.py and auth/staff.py.

Covers:
- require_role / scope_organization raise Forbidden on violation
- only an OWNER invites users; invited users can log in with their role
- non-owners may edit only their own name, phone and password
- users of another organization are NotFound, never Forbidden
- self-deactivation and losing the last active owner are blocked
- only an OWNER deletes users, never themselves; sessions go with the user
- the store refuses a write that would remove the last active owner, also
  when two owners remove each other from concurrent threads
- a password change re-hashes and takes effect at the next login
"""

from __future__ import annotations

import threading

import pytest

from auth import staff
from auth.guard import ORDER_MANAGERS, require_owner, require_role, scope_organization
from auth.models import Role
from auth.sessions import SessionManager
from auth.store import InMemoryCredentialStore, SqlCredentialStore
from core.errors import DuplicateEmail, Forbidden, InvalidCredentials, NotFound

PASSWORD = "Passw0rd1"


@pytest.fixture
def owner_ctx(session_manager):
    token = session_manager.register("owner@x.com", PASSWORD, "Olga", "Flowers Co").token
    return session_manager.validate_session(token)


def _ctx_for(session_manager, email: str):
    return session_manager.validate_session(session_manager.login(email, PASSWORD).token)


@pytest.fixture
def manager_ctx(session_manager, credential_store, owner_ctx):
    staff.invite_user(credential_store, owner_ctx, "manager@x.com", PASSWORD, "Max", Role.MANAGER)
    return _ctx_for(session_manager, "manager@x.com")


@pytest.fixture
def florist_ctx(session_manager, credential_store, owner_ctx):
    staff.invite_user(credential_store, owner_ctx, "florist@x.com", PASSWORD, "Flora", Role.FLORIST)
    return _ctx_for(session_manager, "florist@x.com")


@pytest.fixture
def other_owner_ctx(session_manager):
    token = session_manager.register("rival@y.com", PASSWORD, "Rita", "Rival Blooms").token
    return session_manager.validate_session(token)


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class TestGuard:
    def test_require_role(self, owner_ctx, florist_ctx):
        require_role(owner_ctx, *ORDER_MANAGERS)
        with pytest.raises(Forbidden):
            require_role(florist_ctx, *ORDER_MANAGERS)

    def test_require_owner(self, manager_ctx):
        with pytest.raises(Forbidden):
            require_owner(manager_ctx)

    def test_scope_organization(self, owner_ctx, other_owner_ctx):
        assert scope_organization(owner_ctx) == owner_ctx.organization.id
        assert scope_organization(owner_ctx, owner_ctx.organization.id) == owner_ctx.organization.id
        with pytest.raises(Forbidden):
            scope_organization(owner_ctx, other_owner_ctx.organization.id)


# ---------------------------------------------------------------------------
# Staff management
# ---------------------------------------------------------------------------


class TestInvite:
    def test_owner_invites_user(self, credential_store, owner_ctx, session_manager):
        user = staff.invite_user(credential_store, owner_ctx, "c@x.com", PASSWORD, "Carl", Role.COURIER)
        assert user.organization_id == owner_ctx.organization.id
        assert user.role == Role.COURIER
        assert session_manager.login("c@x.com", PASSWORD).user.id == user.id

    def test_manager_cannot_invite(self, credential_store, manager_ctx):
        with pytest.raises(Forbidden):
            staff.invite_user(credential_store, manager_ctx, "c@x.com", PASSWORD, "Carl")

    def test_invite_existing_email(self, credential_store, owner_ctx, other_owner_ctx):
        with pytest.raises(DuplicateEmail):
            staff.invite_user(credential_store, owner_ctx, "rival@y.com", PASSWORD, "Dup")

    def test_list_staff_is_organization_scoped(self, credential_store, owner_ctx, manager_ctx, other_owner_ctx):
        emails = {u.email for u in staff.list_staff(credential_store, owner_ctx)}
        assert emails == {"owner@x.com", "manager@x.com"}
        assert [u.email for u in staff.list_staff(credential_store, other_owner_ctx)] == ["rival@y.com"]


class TestUpdateStaff:
    def test_self_edit_allowed(self, credential_store, florist_ctx):
        updated = staff.update_staff(credential_store, florist_ctx, florist_ctx.user.id, phone="+100")
        assert updated.phone == "+100"

    def test_non_owner_cannot_edit_others(self, credential_store, florist_ctx, manager_ctx):
        with pytest.raises(Forbidden):
            staff.update_staff(credential_store, florist_ctx, manager_ctx.user.id, name="X")

    def test_non_owner_cannot_change_own_role(self, credential_store, florist_ctx):
        with pytest.raises(Forbidden):
            staff.update_staff(credential_store, florist_ctx, florist_ctx.user.id, role=Role.OWNER)

    def test_other_organization_is_not_found(self, credential_store, owner_ctx, other_owner_ctx):
        with pytest.raises(NotFound):
            staff.update_staff(credential_store, owner_ctx, other_owner_ctx.user.id, name="Hijack")

    def test_owner_cannot_deactivate_self(self, credential_store, owner_ctx):
        with pytest.raises(Forbidden):
            staff.update_staff(credential_store, owner_ctx, owner_ctx.user.id, is_active=False)

    def test_last_owner_cannot_be_demoted(self, credential_store, owner_ctx):
        with pytest.raises(Forbidden):
            staff.update_staff(credential_store, owner_ctx, owner_ctx.user.id, role=Role.MANAGER)

    def test_owner_can_step_down_when_another_owner_exists(self, credential_store, owner_ctx, manager_ctx):
        staff.update_staff(credential_store, owner_ctx, manager_ctx.user.id, role=Role.OWNER)
        updated = staff.update_staff(credential_store, owner_ctx, owner_ctx.user.id, role=Role.MANAGER)
        assert updated.role == Role.MANAGER

    def test_deactivation_ends_sessions(self, credential_store, session_manager, owner_ctx, manager_ctx):
        token = session_manager.login("manager@x.com", PASSWORD).token
        staff.update_staff(credential_store, owner_ctx, manager_ctx.user.id, is_active=False)
        assert session_manager.validate_session(token) is None

    def test_password_change(self, credential_store, session_manager, manager_ctx):
        staff.update_staff(credential_store, manager_ctx, manager_ctx.user.id, password="N3wPassword")
        with pytest.raises(InvalidCredentials):
            session_manager.login("manager@x.com", PASSWORD)
        assert session_manager.login("manager@x.com", "N3wPassword").user.id == manager_ctx.user.id

    def test_unknown_field_rejected(self, credential_store, owner_ctx):
        with pytest.raises(ValueError):
            staff.update_staff(credential_store, owner_ctx, owner_ctx.user.id, email="new@x.com")


class TestDeleteStaff:
    def test_owner_deletes_user_and_sessions(self, credential_store, session_manager, owner_ctx, florist_ctx):
        token = session_manager.login("florist@x.com", PASSWORD).token
        detached = []
        staff.delete_staff(
            credential_store, owner_ctx, florist_ctx.user.id, detach=lambda org, user: detached.append((org, user))
        )
        assert credential_store.find_user_by_id(florist_ctx.user.id) is None
        assert session_manager.validate_session(token) is None
        assert detached == [(owner_ctx.organization.id, florist_ctx.user.id)]
        with pytest.raises(InvalidCredentials):
            session_manager.login("florist@x.com", PASSWORD)

    def test_owner_cannot_delete_self(self, credential_store, owner_ctx):
        with pytest.raises(Forbidden):
            staff.delete_staff(credential_store, owner_ctx, owner_ctx.user.id)
        assert credential_store.find_user_by_id(owner_ctx.user.id) is not None

    def test_non_owner_cannot_delete(self, credential_store, manager_ctx, florist_ctx):
        with pytest.raises(Forbidden):
            staff.delete_staff(credential_store, manager_ctx, florist_ctx.user.id)

    def test_other_organization_is_not_found(self, credential_store, owner_ctx, other_owner_ctx):
        with pytest.raises(NotFound):
            staff.delete_staff(credential_store, owner_ctx, other_owner_ctx.user.id)
        assert credential_store.find_user_by_id(other_owner_ctx.user.id) is not None

    def test_owner_deletes_another_owner(self, credential_store, owner_ctx, manager_ctx):
        staff.update_staff(credential_store, owner_ctx, manager_ctx.user.id, role=Role.OWNER)
        staff.delete_staff(credential_store, owner_ctx, manager_ctx.user.id)
        assert credential_store.count_active_owners(owner_ctx.organization.id) == 1


class TestOwnerGuardInStore:
    def test_last_owner_write_is_refused(self, credential_store, owner_ctx):
        user_id, org_id = owner_ctx.user.id, owner_ctx.organization.id
        assert credential_store.update_user(user_id, org_id, keep_owner=True, role=Role.MANAGER) is None
        assert credential_store.update_user(user_id, org_id, keep_owner=True, is_active=False) is None
        assert credential_store.delete_user(user_id, keep_owner=True) is False
        assert credential_store.find_user_by_id(user_id).role == Role.OWNER
        assert credential_store.count_active_owners(org_id) == 1

    def test_other_users_are_not_held(self, credential_store, owner_ctx, manager_ctx):
        updated = credential_store.update_user(
            manager_ctx.user.id, owner_ctx.organization.id, keep_owner=True, role=Role.FLORIST
        )
        assert updated.role == Role.FLORIST
        assert credential_store.delete_user(manager_ctx.user.id, keep_owner=True) is True

    def test_owner_of_other_organization_is_independent(self, credential_store, owner_ctx, other_owner_ctx):
        assert credential_store.delete_user(other_owner_ctx.user.id, keep_owner=True) is False
        assert credential_store.count_active_owners(owner_ctx.organization.id) == 1


# ---------------------------------------------------------------------------
# Concurrent owner removal
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def threaded_store(request, file_db_url):
    """Credential store for thread races. The SQL variant is file-backed."""
    store = InMemoryCredentialStore() if request.param == "memory" else SqlCredentialStore(file_db_url)
    yield store
    store.close()


def _demote(store, ctx, user_id):
    staff.update_staff(store, ctx, user_id, role=Role.MANAGER)


def _deactivate(store, ctx, user_id):
    staff.update_staff(store, ctx, user_id, is_active=False)


def _delete(store, ctx, user_id):
    staff.delete_staff(store, ctx, user_id)


@pytest.mark.parametrize("action", [_demote, _deactivate, _delete], ids=["demote", "deactivate", "delete"])
def test_two_owners_removing_each_other_leave_one(threaded_store, action):
    manager = SessionManager(threaded_store)
    for n in range(5):
        first = manager.validate_session(manager.register(f"a{n}@x.com", PASSWORD, "Ann", f"Shop {n}").token)
        staff.invite_user(threaded_store, first, f"b{n}@x.com", PASSWORD, "Bea", Role.OWNER)
        second = _ctx_for(manager, f"b{n}@x.com")
        barrier = threading.Barrier(2)
        outcomes: list[str] = []
        lock = threading.Lock()

        def attempt(ctx, target) -> None:
            barrier.wait()
            try:
                action(threaded_store, ctx, target.user.id)
                outcome = "applied"
            except Forbidden:
                outcome = "forbidden"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt, args=pair) for pair in ((first, second), (second, first))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["applied", "forbidden"]
        assert threaded_store.count_active_owners(first.organization.id) == 1
