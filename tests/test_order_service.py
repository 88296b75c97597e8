"""Unit tests for orders/service.py -- authorization-aware order operations.

Covers:
- only OWNER/MANAGER create, edit and delete orders
- assignees and client-supplied organization ids must belong to the caller
- cross-tenant access is NotFound
- role-based list visibility for florists and couriers
- stepwise transitions, InvalidTransition for skips and terminal states
- lost races classified as InvalidTransition or Conflict
- racing transitions from many threads: exactly one succeeds, in memory and
  on a file-backed SQLite database
- duplicate detection and the force override
- courier batch claim
- deleting a user clears their assignments and history authorship
- florist/courier self-claim
- expired deadlines leave the order untouched
"""

from __future__ import annotations

import threading
import time

import pytest

from auth import staff
from auth.models import Role
from auth.sessions import SessionManager
from auth.store import InMemoryCredentialStore, SqlCredentialStore
from core.errors import Conflict, DeadlineExceeded, DuplicateOrder, Forbidden, InvalidTransition, NotFound
from orders.models import OrderStatus
from orders.service import MAX_BATCH_CLAIM, OrderService
from orders.store import InMemoryOrderRepository, SqlOrderRepository

PASSWORD = "Passw0rd1"


def _fields(**overrides) -> dict:
    fields = {
        "client_name": "Ann",
        "client_phone": "+1000",
        "address": "1 Rose St",
        "delivery_at": "2026-03-08T10:00:00+00:00",
        "amount": 4500,
    }
    fields.update(overrides)
    return fields


class Shop:
    """One organization with a user per role, plus a rival organization."""

    def __init__(self, session_manager: SessionManager) -> None:
        store = session_manager.store
        self.owner = self._ctx(session_manager, session_manager.register("o@x.com", PASSWORD, "Olga", "Flowers Co"))
        for email, name, role in (
            ("m@x.com", "Max", Role.MANAGER),
            ("f@x.com", "Flora", Role.FLORIST),
            ("f2@x.com", "Fern", Role.FLORIST),
            ("c@x.com", "Carl", Role.COURIER),
        ):
            staff.invite_user(store, self.owner, email, PASSWORD, name, role)
        self.manager = self._login(session_manager, "m@x.com")
        self.florist = self._login(session_manager, "f@x.com")
        self.florist2 = self._login(session_manager, "f2@x.com")
        self.courier = self._login(session_manager, "c@x.com")
        self.rival = self._ctx(session_manager, session_manager.register("r@y.com", PASSWORD, "Rita", "Rival Blooms"))

    @staticmethod
    def _ctx(session_manager, result):
        return session_manager.validate_session(result.token)

    def _login(self, session_manager, email):
        return self._ctx(session_manager, session_manager.login(email, PASSWORD))


@pytest.fixture
def shop(session_manager) -> Shop:
    return Shop(session_manager)


# ---------------------------------------------------------------------------
# CRUD and authorization
# ---------------------------------------------------------------------------


class TestCreate:
    def test_manager_creates_new_order(self, order_service, shop):
        order = order_service.create_order(shop.manager, _fields())
        assert order.status == OrderStatus.NEW
        assert order.organization_id == shop.owner.organization.id
        assert order.manager_id == shop.manager.user.id

    @pytest.mark.parametrize("role", ["florist", "courier"])
    def test_staff_roles_cannot_create(self, order_service, shop, role):
        with pytest.raises(Forbidden):
            order_service.create_order(getattr(shop, role), _fields())

    def test_foreign_organization_id_rejected(self, order_service, shop):
        with pytest.raises(Forbidden):
            order_service.create_order(shop.owner, _fields(), organization_id=shop.rival.organization.id)

    def test_own_organization_id_accepted(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields(), organization_id=shop.owner.organization.id)
        assert order.organization_id == shop.owner.organization.id

    def test_assignee_from_other_organization_is_not_found(self, order_service, shop):
        with pytest.raises(NotFound):
            order_service.create_order(shop.owner, _fields(florist_id=shop.rival.user.id))

    def test_missing_fields(self, order_service, shop):
        fields = _fields()
        del fields["address"]
        with pytest.raises(ValueError):
            order_service.create_order(shop.owner, fields)


class TestDuplicates:
    def test_same_client_amount_and_day_is_duplicate(self, order_service, shop):
        first = order_service.create_order(shop.owner, _fields())
        with pytest.raises(DuplicateOrder) as info:
            order_service.create_order(shop.manager, _fields(delivery_at="2026-03-08T17:00:00+00:00"))
        assert [o.id for o in info.value.duplicates] == [first.id]
        assert info.value.detail == f"matching orders: #{first.order_number}"
        assert len(order_service.list_orders(shop.owner)) == 1

    def test_force_creates_anyway(self, order_service, shop):
        order_service.create_order(shop.owner, _fields())
        forced = order_service.create_order(shop.owner, _fields(), force=True)
        assert forced.order_number == 2

    @pytest.mark.parametrize(
        "overrides",
        [
            {"delivery_at": "2026-03-09T10:00:00+00:00"},
            {"amount": 4501},
            {"client_phone": "+2000"},
        ],
    )
    def test_different_order_is_not_duplicate(self, order_service, shop, overrides):
        order_service.create_order(shop.owner, _fields())
        assert order_service.create_order(shop.owner, _fields(**overrides)).order_number == 2

    def test_other_organization_is_not_duplicate(self, order_service, shop):
        order_service.create_order(shop.owner, _fields())
        assert order_service.create_order(shop.rival, _fields()).order_number == 1


class TestReadAndIsolation:
    def test_cross_tenant_access_is_not_found(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(NotFound):
            order_service.get_order(shop.rival, order.id)
        with pytest.raises(NotFound):
            order_service.transition(shop.rival, order.id, OrderStatus.CANCELED)
        with pytest.raises(NotFound):
            order_service.get_history(shop.rival, order.id)
        with pytest.raises(NotFound):
            order_service.update_order(shop.rival, order.id, {"comment": "x"})
        with pytest.raises(NotFound):
            order_service.delete_order(shop.rival, order.id)
        assert order_service.list_orders(shop.rival) == []
        assert order_service.get_order(shop.owner, order.id).status == OrderStatus.NEW

    def test_florist_visibility(self, order_service, shop):
        mine = order_service.create_order(shop.owner, _fields(florist_id=shop.florist.user.id))
        open_new = order_service.create_order(shop.owner, _fields(amount=4600))
        theirs = order_service.create_order(shop.owner, _fields(amount=4700, florist_id=shop.florist2.user.id))
        open_in_work = order_service.create_order(shop.owner, _fields(amount=4800))
        order_service.transition(shop.owner, open_in_work.id, OrderStatus.IN_WORK)

        visible = {o.id for o in order_service.list_orders(shop.florist)}
        assert visible == {mine.id, open_new.id}
        assert theirs.id not in visible

    def test_courier_visibility(self, order_service, shop):
        assembled = order_service.create_order(shop.owner, _fields())
        for status in (OrderStatus.IN_WORK, OrderStatus.ASSEMBLED):
            order_service.transition(shop.owner, assembled.id, status)
        mine = order_service.create_order(shop.owner, _fields(amount=4600, courier_id=shop.courier.user.id))
        order_service.create_order(shop.owner, _fields(amount=4700))

        visible = {o.id for o in order_service.list_orders(shop.courier)}
        assert visible == {assembled.id, mine.id}

    def test_managers_see_everything(self, order_service, shop):
        for amount in (1000, 2000, 3000):
            order_service.create_order(shop.owner, _fields(amount=amount))
        assert len(order_service.list_orders(shop.manager)) == 3


class TestUpdateAndDelete:
    def test_update(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        changes = {"amount": 5000, "courier_id": shop.courier.user.id}
        updated = order_service.update_order(shop.manager, order.id, changes)
        assert updated.amount == 5000
        assert updated.courier_id == shop.courier.user.id

    def test_status_not_editable(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(ValueError):
            order_service.update_order(shop.owner, order.id, {"status": "DELIVERED"})

    def test_required_field_cannot_be_cleared(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(ValueError):
            order_service.update_order(shop.owner, order.id, {"client_name": None})

    def test_florist_cannot_edit_or_delete(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(Forbidden):
            order_service.update_order(shop.florist, order.id, {"amount": 1})
        with pytest.raises(Forbidden):
            order_service.delete_order(shop.florist, order.id)

    def test_delete(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        order_service.delete_order(shop.manager, order.id)
        with pytest.raises(NotFound):
            order_service.get_order(shop.owner, order.id)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestTransition:
    def test_stepwise_to_delivered_with_history(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        path = [OrderStatus.IN_WORK, OrderStatus.ASSEMBLED, OrderStatus.ON_DELIVERY, OrderStatus.DELIVERED]
        for status in path:
            assert order_service.transition(shop.florist, order.id, status, note=status.value).status == status

        history = order_service.get_history(shop.owner, order.id)
        assert [h.to_status for h in history] == [OrderStatus.NEW, *path]
        assert all(h.changed_by_user_id == shop.florist.user.id for h in history[1:])

    def test_skip_rejected(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        order_service.transition(shop.owner, order.id, OrderStatus.IN_WORK)
        with pytest.raises(InvalidTransition):
            order_service.transition(shop.owner, order.id, OrderStatus.DELIVERED)
        assert order_service.get_order(shop.owner, order.id).status == OrderStatus.IN_WORK

    def test_terminal_is_final(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        order_service.transition(shop.owner, order.id, OrderStatus.CANCELED)
        for target in OrderStatus:
            with pytest.raises(InvalidTransition):
                order_service.transition(shop.owner, order.id, target)

    def test_expired_deadline_leaves_order_untouched(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(DeadlineExceeded):
            order_service.transition(shop.owner, order.id, OrderStatus.IN_WORK, deadline=time.monotonic() - 1)
        assert order_service.get_order(shop.owner, order.id).status == OrderStatus.NEW
        assert len(order_service.get_history(shop.owner, order.id)) == 1


class _InterleavingRepository(InMemoryOrderRepository):
    """Lets another writer change the status between the read and the write."""

    def __init__(self) -> None:
        super().__init__()
        self.interloper: OrderStatus | None = None

    def compare_and_set_status(self, org_id, order_id, expected, new, **kwargs):
        if self.interloper is not None:
            target, self.interloper = self.interloper, None
            super().compare_and_set_status(org_id, order_id, expected, target)
        return super().compare_and_set_status(org_id, order_id, expected, new, **kwargs)


@pytest.fixture
def racing():
    repo = _InterleavingRepository()
    manager = SessionManager(InMemoryCredentialStore())
    return repo, OrderService(repo, manager.store), Shop(manager)


class TestLostRace:
    def test_lost_to_cancel_is_invalid_transition(self, racing):
        repo, service, shop = racing
        order = service.create_order(shop.owner, _fields())
        repo.interloper = OrderStatus.CANCELED
        with pytest.raises(InvalidTransition):
            service.transition(shop.manager, order.id, OrderStatus.IN_WORK)
        assert service.get_order(shop.owner, order.id).status == OrderStatus.CANCELED

    def test_lost_but_still_legal_is_conflict(self, racing):
        repo, service, shop = racing
        order = service.create_order(shop.owner, _fields())
        repo.interloper = OrderStatus.IN_WORK
        with pytest.raises(Conflict):
            service.transition(shop.manager, order.id, OrderStatus.CANCELED)
        assert service.get_order(shop.owner, order.id).status == OrderStatus.IN_WORK


class _GatedReads:
    """Wraps a repository and holds every thread's first read at a barrier so all of them observe NEW."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.barrier: threading.Barrier | None = None
        self._local = threading.local()

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def get_order(self, org_id, order_id):
        order = self._inner.get_order(org_id, order_id)
        if self.barrier is not None and not getattr(self._local, "waited", False):
            self._local.waited = True
            self.barrier.wait()
        return order


@pytest.fixture(params=["memory", "sql"])
def gated(request, file_db_url):
    if request.param == "memory":
        repo, credentials = InMemoryOrderRepository(), InMemoryCredentialStore()
    else:
        repo, credentials = SqlOrderRepository(file_db_url), SqlCredentialStore(file_db_url)
    yield _GatedReads(repo), credentials
    repo.close()
    credentials.close()


def test_racing_threads_exactly_one_wins(gated):
    repo, credentials = gated
    manager = SessionManager(credentials)
    service = OrderService(repo, credentials)
    shop = Shop(manager)
    order = service.create_order(shop.owner, _fields())

    targets = [OrderStatus.IN_WORK, OrderStatus.CANCELED] * 6
    repo.barrier = threading.Barrier(len(targets))
    outcomes: list[object] = []
    lock = threading.Lock()

    def attempt(target: OrderStatus) -> None:
        try:
            service.transition(shop.manager, order.id, target)
            outcome: object = target
        except (InvalidTransition, Conflict) as exc:
            outcome = exc
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    repo.barrier = None

    winners = [o for o in outcomes if isinstance(o, OrderStatus)]
    assert len(outcomes) == len(targets)
    assert len(winners) == 1
    final = service.get_order(shop.owner, order.id).status
    assert final == winners[0]
    assert len(service.get_history(shop.owner, order.id)) == 2


# ---------------------------------------------------------------------------
# Self-claim
# ---------------------------------------------------------------------------


class TestClaim:
    def test_florist_claims_new_order(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        claimed = order_service.claim_order(shop.florist, order.id)
        assert claimed.status == OrderStatus.IN_WORK
        assert claimed.florist_id == shop.florist.user.id
        assert order_service.get_history(shop.owner, order.id)[-1].changed_by_user_id == shop.florist.user.id

    def test_second_florist_gets_conflict(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        order_service.claim_order(shop.florist, order.id)
        with pytest.raises(Conflict):
            order_service.claim_order(shop.florist2, order.id)

    def test_courier_claims_assembled_order(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(InvalidTransition):
            order_service.claim_order(shop.courier, order.id)
        order_service.transition(shop.owner, order.id, OrderStatus.IN_WORK)
        order_service.transition(shop.owner, order.id, OrderStatus.ASSEMBLED)

        claimed = order_service.claim_order(shop.courier, order.id)
        assert claimed.status == OrderStatus.ON_DELIVERY
        assert claimed.courier_id == shop.courier.user.id

    def test_managers_cannot_claim(self, order_service, shop):
        order = order_service.create_order(shop.owner, _fields())
        with pytest.raises(Forbidden):
            order_service.claim_order(shop.manager, order.id)

    def _assembled(self, order_service, shop, amount):
        order = order_service.create_order(shop.owner, _fields(amount=amount))
        order_service.transition(shop.owner, order.id, OrderStatus.IN_WORK)
        return order_service.transition(shop.owner, order.id, OrderStatus.ASSEMBLED)

    def test_courier_batch_claim_skips_unavailable(self, order_service, shop):
        first = self._assembled(order_service, shop, 1000)
        second = self._assembled(order_service, shop, 2000)
        fresh = order_service.create_order(shop.owner, _fields(amount=3000))
        taken = self._assembled(order_service, shop, 4000)
        order_service.claim_order(shop.courier, taken.id)
        foreign = order_service.create_order(shop.rival, _fields())

        claimed = order_service.claim_orders(
            shop.courier, [first.id, fresh.id, taken.id, foreign.id, "missing", second.id, first.id]
        )
        assert [o.id for o in claimed] == [first.id, second.id]
        assert all(o.status == OrderStatus.ON_DELIVERY for o in claimed)
        assert all(o.courier_id == shop.courier.user.id for o in claimed)
        assert order_service.get_order(shop.owner, fresh.id).status == OrderStatus.NEW

    @pytest.mark.parametrize("role", ["owner", "manager", "florist"])
    def test_batch_claim_is_for_couriers(self, order_service, shop, role):
        order = self._assembled(order_service, shop, 1000)
        with pytest.raises(Forbidden):
            order_service.claim_orders(getattr(shop, role), [order.id])
        assert order_service.get_order(shop.owner, order.id).courier_id is None

    def test_batch_claim_bounds(self, order_service, shop):
        with pytest.raises(ValueError):
            order_service.claim_orders(shop.courier, [])
        with pytest.raises(ValueError):
            order_service.claim_orders(shop.courier, [f"id-{i}" for i in range(MAX_BATCH_CLAIM + 1)])


# ---------------------------------------------------------------------------
# Deleted users
# ---------------------------------------------------------------------------


def test_deleting_user_clears_assignments_and_authorship(order_service, credential_store, shop):
    order = order_service.create_order(shop.owner, _fields())
    order_service.claim_order(shop.florist, order.id)
    other = order_service.create_order(shop.owner, _fields(amount=1000, florist_id=shop.florist2.user.id))

    staff.delete_staff(credential_store, shop.owner, shop.florist.user.id, detach=order_service.release_user)

    assert order_service.get_order(shop.owner, order.id).florist_id is None
    assert order_service.get_order(shop.owner, order.id).status == OrderStatus.IN_WORK
    assert [h.changed_by_user_id for h in order_service.get_history(shop.owner, order.id)] == [
        shop.owner.user.id,
        None,
    ]
    assert order_service.get_order(shop.owner, other.id).florist_id == shop.florist2.user.id
