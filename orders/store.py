"""
orders/store.py -- Organization-scoped persistence for orders and status history.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in orders/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. OrderRepository is the contract,
SqlOrderRepository and InMemoryOrderRepository implement it, and the
_row_to_* functions are the mappers.

Tenant isolation: every method takes the organization id and filters by it.
An order of another organization is indistinguishable from a missing one.

Status writes: compare_and_set_status() is the only way to change status.
It updates WHERE status = :expected and writes the history row in the same
transaction, so two racing transitions from the same status cannot both
succeed. Other fields are last-write-wins.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.store import make_engine
from core.config import get_settings
from core.errors import Conflict
from orders.models import Order, OrderHistoryEntry, OrderStatus, PaymentStatus
from orders.workflow import INITIAL_STATUS

logger = logging.getLogger("floraops.orders")

# Fields update_order() accepts. status is deliberately absent.
ORDER_MUTABLE_FIELDS = frozenset(
    {
        "client_name",
        "client_phone",
        "address",
        "delivery_at",
        "delivery_until",
        "amount",
        "comment",
        "payment_status",
        "florist_id",
        "courier_id",
    }
)

_ASSIGNABLE_FIELDS = frozenset({"florist_id", "courier_id"})

# Order columns that reference a user. Cleared when that user is deleted.
_USER_REFERENCE_FIELDS = ("manager_id", "florist_id", "courier_id")

# Attempts at allocating the next order_number before giving up with Conflict.
_ORDER_NUMBER_ATTEMPTS = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("organization_id", String(36), nullable=False, index=True),
    Column("order_number", Integer, nullable=False),
    Column("status", String(20), nullable=False, server_default=INITIAL_STATUS.value, index=True),
    Column("client_name", String(255), nullable=False),
    Column("client_phone", String(50), nullable=False),
    Column("address", Text, nullable=False),
    Column("delivery_at", String(32), nullable=False, index=True),
    Column("delivery_until", String(32)),
    Column("amount", Integer, nullable=False),
    Column("comment", Text),
    Column("payment_status", String(20), nullable=False, server_default=PaymentStatus.NOT_PAID.value),
    Column("manager_id", String(36)),
    Column("florist_id", String(36)),
    Column("courier_id", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("organization_id", "order_number", name="uq_org_order_number"),
)

_history = Table(
    "order_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("from_status", String(20)),  # NULL for the creation entry
    Column("to_status", String(20), nullable=False),
    Column("changed_by_user_id", String(36)),
    Column("changed_at", String(32), nullable=False),
    Column("note", Text),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _check_order_fields(fields: dict) -> dict:
    if "status" in fields:
        raise ValueError("status changes must go through compare_and_set_status()")
    unknown = set(fields) - ORDER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown order fields: {unknown!r}")
    if "payment_status" in fields:
        fields["payment_status"] = PaymentStatus(fields["payment_status"])
    return fields


def _check_assign(assign: tuple[str, str]) -> tuple[str, str]:
    field, user_id = assign
    if field not in _ASSIGNABLE_FIELDS:
        raise ValueError(f"Cannot assign field {field!r}")
    return field, user_id


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@runtime_checkable
class OrderRepository(Protocol):
    """Storage contract for orders. Every read and write is organization-scoped."""

    def create_order(self, order: Order, changed_by: Optional[str] = None) -> Order: ...

    def get_order(self, org_id: str, order_id: str) -> Optional[Order]: ...

    def list_orders(self, org_id: str, status: Optional[OrderStatus] = None) -> list[Order]: ...

    def find_orders_for_client(self, org_id: str, client_phone: str, amount: int) -> list[Order]: ...

    def update_order(self, org_id: str, order_id: str, **fields) -> Optional[Order]: ...

    def compare_and_set_status(
        self,
        org_id: str,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        changed_by: Optional[str] = None,
        note: Optional[str] = None,
        assign: Optional[tuple[str, str]] = None,
    ) -> bool: ...

    def get_history(self, org_id: str, order_id: str) -> list[OrderHistoryEntry]: ...

    def delete_order(self, org_id: str, order_id: str) -> bool: ...

    def detach_user(self, org_id: str, user_id: str) -> None: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# SQL repository
# ---------------------------------------------------------------------------


class SqlOrderRepository:
    """SQLAlchemy Core repository for Order and OrderHistoryEntry.

    Usage:
        repo = SqlOrderRepository()                               # settings.database_url
        order = repo.create_order(Order(organization_id=org.id, ...), changed_by=user.id)
        repo.compare_and_set_status(org.id, order.id, OrderStatus.NEW, OrderStatus.IN_WORK)
        repo.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(self, order: Order, changed_by: Optional[str] = None) -> Order:
        """Insert an order in status NEW together with its creation history entry.

        order_number is max+1 within the organization. Two concurrent inserts
        may pick the same number; the unique constraint rejects the loser,
        which retries with a fresh number.
        """
        now = _now_iso()
        for attempt in range(1, _ORDER_NUMBER_ATTEMPTS + 1):
            try:
                with self.engine.begin() as conn:
                    current_max = conn.execute(
                        select(func.max(_orders.c.order_number)).where(
                            _orders.c.organization_id == order.organization_id
                        )
                    ).scalar()
                    created = replace(
                        order,
                        id=str(uuid.uuid4()),
                        order_number=(current_max or 0) + 1,
                        status=INITIAL_STATUS,
                        payment_status=PaymentStatus(order.payment_status),
                        created_at=now,
                        updated_at=now,
                    )
                    conn.execute(_orders.insert().values(**_order_values(created)))
                    conn.execute(
                        _history.insert().values(
                            order_id=created.id,
                            from_status=None,
                            to_status=INITIAL_STATUS.value,
                            changed_by_user_id=changed_by,
                            changed_at=now,
                            note="Order created",
                        )
                    )
                return created
            except IntegrityError:
                logger.warning(
                    "order_number collision in organization %s (attempt %d)", order.organization_id, attempt
                )
        raise Conflict("Could not allocate an order number. Retry the request.")

    def get_order(self, org_id: str, order_id: str) -> Optional[Order]:
        """Fetch a single order of org_id. Returns None if absent or foreign."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _orders.select().where((_orders.c.id == order_id) & (_orders.c.organization_id == org_id))
            ).fetchone()
        return _row_to_order(row) if row is not None else None

    def list_orders(self, org_id: str, status: Optional[OrderStatus] = None) -> list[Order]:
        """Return the organization's orders, latest delivery first."""
        stmt = _orders.select().where(_orders.c.organization_id == org_id)
        if status is not None:
            stmt = stmt.where(_orders.c.status == OrderStatus(status).value)
        stmt = stmt.order_by(_orders.c.delivery_at.desc(), _orders.c.order_number.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_order(r) for r in rows]

    def find_orders_for_client(self, org_id: str, client_phone: str, amount: int) -> list[Order]:
        """Orders of org_id for this client phone and amount, any status."""
        stmt = (
            _orders.select()
            .where(
                (_orders.c.organization_id == org_id)
                & (_orders.c.client_phone == client_phone)
                & (_orders.c.amount == amount)
            )
            .order_by(_orders.c.order_number)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_order(r) for r in rows]

    def update_order(self, org_id: str, order_id: str, **fields) -> Optional[Order]:
        """Update non-status fields. Returns the updated order or None if not found."""
        fields = _check_order_fields(fields)
        values = {k: (v.value if isinstance(v, PaymentStatus) else v) for k, v in fields.items()}
        values["updated_at"] = _now_iso()
        where = (_orders.c.id == order_id) & (_orders.c.organization_id == org_id)
        with self.engine.connect() as conn:
            result = conn.execute(_orders.update().where(where).values(**values))
            row = conn.execute(_orders.select().where(where)).fetchone() if result.rowcount else None
            conn.commit()
        return _row_to_order(row) if row is not None else None

    def compare_and_set_status(
        self,
        org_id: str,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        changed_by: Optional[str] = None,
        note: Optional[str] = None,
        assign: Optional[tuple[str, str]] = None,
    ) -> bool:
        """Set status to new only if it is currently expected.

        Returns True if this call made the change (and wrote the history
        entry in the same transaction), False if the order is missing, foreign,
        or no longer in the expected status.

        assign=(field, user_id) additionally claims an empty florist_id or
        courier_id slot in the same write; an already-filled slot fails the
        condition like a status mismatch.
        """
        now = _now_iso()
        where = (
            (_orders.c.id == order_id)
            & (_orders.c.organization_id == org_id)
            & (_orders.c.status == OrderStatus(expected).value)
        )
        values = {"status": OrderStatus(new).value, "updated_at": now}
        if assign is not None:
            field, user_id = _check_assign(assign)
            where = where & _orders.c[field].is_(None)
            values[field] = user_id
        with self.engine.begin() as conn:
            result = conn.execute(_orders.update().where(where).values(**values))
            if result.rowcount != 1:
                return False
            conn.execute(
                _history.insert().values(
                    order_id=order_id,
                    from_status=OrderStatus(expected).value,
                    to_status=OrderStatus(new).value,
                    changed_by_user_id=changed_by,
                    changed_at=now,
                    note=note,
                )
            )
        return True

    def get_history(self, org_id: str, order_id: str) -> list[OrderHistoryEntry]:
        """Return the order's history, oldest first. Empty for foreign orders."""
        stmt = (
            select(_history)
            .select_from(_history.join(_orders, _history.c.order_id == _orders.c.id))
            .where((_history.c.order_id == order_id) & (_orders.c.organization_id == org_id))
            .order_by(_history.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_history(r) for r in rows]

    def delete_order(self, org_id: str, order_id: str) -> bool:
        """Delete an order and its history. Returns False if absent or foreign."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _orders.delete().where((_orders.c.id == order_id) & (_orders.c.organization_id == org_id))
            )
            if result.rowcount:
                conn.execute(_history.delete().where(_history.c.order_id == order_id))
        return result.rowcount > 0

    def detach_user(self, org_id: str, user_id: str) -> None:
        """Clear a deleted user from order assignments and history authorship."""
        org_orders = select(_orders.c.id).where(_orders.c.organization_id == org_id)
        with self.engine.begin() as conn:
            for field in _USER_REFERENCE_FIELDS:
                conn.execute(
                    _orders.update()
                    .where((_orders.c.organization_id == org_id) & (_orders.c[field] == user_id))
                    .values(**{field: None})
                )
            conn.execute(
                _history.update()
                .where((_history.c.changed_by_user_id == user_id) & _history.c.order_id.in_(org_orders))
                .values(changed_by_user_id=None)
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


class InMemoryOrderRepository:
    """Dict-backed OrderRepository for tests and embedding.

    A single lock makes the status check and write in compare_and_set_status()
    one atomic step, mirroring the conditional UPDATE of the SQL repository.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self._history: list[OrderHistoryEntry] = []
        self._next_history_id = 1

    def _append_history(self, entry: OrderHistoryEntry) -> None:
        # Caller holds the lock.
        entry.id = self._next_history_id
        self._next_history_id += 1
        self._history.append(entry)

    def _scoped(self, org_id: str, order_id: str) -> Optional[Order]:
        # Caller holds the lock.
        order = self._orders.get(order_id)
        if order is None or order.organization_id != org_id:
            return None
        return order

    def create_order(self, order: Order, changed_by: Optional[str] = None) -> Order:
        now = _now_iso()
        with self._lock:
            numbers = [o.order_number or 0 for o in self._orders.values() if o.organization_id == order.organization_id]
            created = replace(
                order,
                id=str(uuid.uuid4()),
                order_number=max(numbers, default=0) + 1,
                status=INITIAL_STATUS,
                payment_status=PaymentStatus(order.payment_status),
                created_at=now,
                updated_at=now,
            )
            self._orders[created.id] = created
            self._append_history(
                OrderHistoryEntry(
                    order_id=created.id,
                    to_status=INITIAL_STATUS,
                    changed_at=now,
                    changed_by_user_id=changed_by,
                    note="Order created",
                )
            )
        return replace(created)

    def get_order(self, org_id: str, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._scoped(org_id, order_id)
        return replace(order) if order is not None else None

    def list_orders(self, org_id: str, status: Optional[OrderStatus] = None) -> list[Order]:
        with self._lock:
            orders = [
                replace(o)
                for o in self._orders.values()
                if o.organization_id == org_id and (status is None or o.status == OrderStatus(status))
            ]
        return sorted(orders, key=lambda o: (o.delivery_at, o.order_number or 0), reverse=True)

    def find_orders_for_client(self, org_id: str, client_phone: str, amount: int) -> list[Order]:
        with self._lock:
            orders = [
                replace(o)
                for o in self._orders.values()
                if o.organization_id == org_id and o.client_phone == client_phone and o.amount == amount
            ]
        return sorted(orders, key=lambda o: o.order_number or 0)

    def update_order(self, org_id: str, order_id: str, **fields) -> Optional[Order]:
        fields = _check_order_fields(fields)
        with self._lock:
            order = self._scoped(org_id, order_id)
            if order is None:
                return None
            updated = replace(order, updated_at=_now_iso(), **fields)
            self._orders[order_id] = updated
        return replace(updated)

    def compare_and_set_status(
        self,
        org_id: str,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        changed_by: Optional[str] = None,
        note: Optional[str] = None,
        assign: Optional[tuple[str, str]] = None,
    ) -> bool:
        expected, new = OrderStatus(expected), OrderStatus(new)
        claim = {}
        if assign is not None:
            field, user_id = _check_assign(assign)
            claim[field] = user_id
        with self._lock:
            order = self._scoped(org_id, order_id)
            if order is None or order.status != expected:
                return False
            if any(getattr(order, field) is not None for field in claim):
                return False
            now = _now_iso()
            self._orders[order_id] = replace(order, status=new, updated_at=now, **claim)
            self._append_history(
                OrderHistoryEntry(
                    order_id=order_id,
                    from_status=expected,
                    to_status=new,
                    changed_at=now,
                    changed_by_user_id=changed_by,
                    note=note,
                )
            )
        return True

    def get_history(self, org_id: str, order_id: str) -> list[OrderHistoryEntry]:
        with self._lock:
            if self._scoped(org_id, order_id) is None:
                return []
            return [replace(h) for h in self._history if h.order_id == order_id]

    def delete_order(self, org_id: str, order_id: str) -> bool:
        with self._lock:
            if self._scoped(org_id, order_id) is None:
                return False
            del self._orders[order_id]
            self._history = [h for h in self._history if h.order_id != order_id]
        return True

    def detach_user(self, org_id: str, user_id: str) -> None:
        with self._lock:
            org_order_ids = set()
            for order_id, order in self._orders.items():
                if order.organization_id != org_id:
                    continue
                org_order_ids.add(order_id)
                cleared = {f: None for f in _USER_REFERENCE_FIELDS if getattr(order, f) == user_id}
                if cleared:
                    self._orders[order_id] = replace(order, **cleared)
            for entry in self._history:
                if entry.order_id in org_order_ids and entry.changed_by_user_id == user_id:
                    entry.changed_by_user_id = None

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _order_values(order: Order) -> dict:
    return {
        "id": order.id,
        "organization_id": order.organization_id,
        "order_number": order.order_number,
        "status": OrderStatus(order.status).value,
        "client_name": order.client_name,
        "client_phone": order.client_phone,
        "address": order.address,
        "delivery_at": order.delivery_at,
        "delivery_until": order.delivery_until,
        "amount": order.amount,
        "comment": order.comment,
        "payment_status": PaymentStatus(order.payment_status).value,
        "manager_id": order.manager_id,
        "florist_id": order.florist_id,
        "courier_id": order.courier_id,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        organization_id=row.organization_id,
        order_number=row.order_number,
        status=OrderStatus(row.status),
        client_name=row.client_name,
        client_phone=row.client_phone,
        address=row.address,
        delivery_at=row.delivery_at,
        delivery_until=row.delivery_until,
        amount=row.amount,
        comment=row.comment,
        payment_status=PaymentStatus(row.payment_status),
        manager_id=row.manager_id,
        florist_id=row.florist_id,
        courier_id=row.courier_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_history(row) -> OrderHistoryEntry:
    return OrderHistoryEntry(
        id=row.id,
        order_id=row.order_id,
        from_status=OrderStatus(row.from_status) if row.from_status else None,
        to_status=OrderStatus(row.to_status),
        changed_by_user_id=row.changed_by_user_id,
        changed_at=row.changed_at,
        note=row.note,
    )
