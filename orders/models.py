"""
orders/models.py -- Domain dataclasses for orders and their status history.

These are pure data containers with zero logic. The transition rules live in
orders/workflow.py; persistence in orders/store.py; authorization-aware
operations in orders/service.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    NEW = "NEW"
    IN_WORK = "IN_WORK"
    ASSEMBLED = "ASSEMBLED"
    ON_DELIVERY = "ON_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class PaymentStatus(str, Enum):
    NOT_PAID = "NOT_PAID"
    ADVANCE = "ADVANCE"
    PAID = "PAID"


@dataclass
class Order:
    """A customer order owned by exactly one organization.

    organization_id never changes after insert. status changes only through
    OrderRepository.compare_and_set_status().

    order_number is a per-organization sequence assigned by the store.
    delivery_at / delivery_until are ISO 8601 timestamps of the delivery window.
    amount is in minor currency units.

    id is None before the record is written.
    """

    organization_id: str
    client_name: str
    client_phone: str
    address: str
    delivery_at: str
    amount: int
    status: OrderStatus = OrderStatus.NEW
    id: Optional[str] = None
    order_number: Optional[int] = None
    delivery_until: Optional[str] = None
    comment: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.NOT_PAID
    manager_id: Optional[str] = None
    florist_id: Optional[str] = None
    courier_id: Optional[str] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass
class OrderHistoryEntry:
    """Audit entry written on creation and on every status change.

    from_status is None for the creation entry. Entries are deleted together
    with their order. Deleting a user clears changed_by_user_id on the entries
    they wrote; nothing else about an entry ever changes.
    """

    order_id: str
    to_status: OrderStatus
    changed_at: str  # ISO 8601
    from_status: Optional[OrderStatus] = None
    changed_by_user_id: Optional[str] = None
    note: Optional[str] = None
    id: Optional[int] = None
