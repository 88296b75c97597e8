"""
orders/service.py -- Authorization-aware order operations.

OrderService is the only entry point the API uses for orders. Every method
takes the caller's SessionContext, resolves the organization from it via
auth.guard.scope_organization(), and passes that id to the repository. An
order of another organization is reported as NotFound, never Forbidden, so
ids of other tenants cannot be discovered.

Status changes go through transition():
  1. read the order (organization-scoped)
  2. check_transition(observed, new)
  3. compare_and_set_status(observed -> new), history in the same transaction
  4. on a lost race, re-read and report InvalidTransition or Conflict

Florists and couriers self-assign through claim_order(); couriers may claim
several ASSEMBLED orders at once with claim_orders(). New orders are checked
for duplicates (same client phone, amount and delivery day) unless forced.

Layer rule: imports auth/, core/ and orders/. Never api/.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from auth.guard import ORDER_MANAGERS, has_role, require_role, scope_organization
from auth.models import Role, SessionContext
from auth.store import CredentialStore
from core.deadline import check_deadline
from core.errors import Conflict, DuplicateOrder, Forbidden, InvalidTransition, NotFound
from orders.models import Order, OrderHistoryEntry, OrderStatus
from orders.store import ORDER_MUTABLE_FIELDS, OrderRepository
from orders.workflow import can_transition, check_transition

logger = logging.getLogger("floraops.orders")

_CREATE_FIELDS = ORDER_MUTABLE_FIELDS
_REQUIRED_CREATE_FIELDS = ("client_name", "client_phone", "address", "delivery_at", "amount")
_NOT_NULL_FIELDS = _REQUIRED_CREATE_FIELDS + ("payment_status",)

# Upper bound on order ids in one batch claim.
MAX_BATCH_CLAIM = 50

# role -> (assignment slot, status an unassigned order is claimable in, status after the claim)
_CLAIMS = {
    Role.FLORIST: ("florist_id", OrderStatus.NEW, OrderStatus.IN_WORK),
    Role.COURIER: ("courier_id", OrderStatus.ASSEMBLED, OrderStatus.ON_DELIVERY),
}


def _delivery_day(delivery_at: str) -> str:
    # Calendar date in the timestamp's own offset: the YYYY-MM-DD prefix of ISO 8601.
    return delivery_at[:10]


class OrderService:
    """Order operations scoped to the caller's organization.

    Usage:
        service = OrderService(SqlOrderRepository(), SqlCredentialStore())
        order = service.create_order(ctx, {"client_name": "Ann", ...})
        service.transition(ctx, order.id, OrderStatus.IN_WORK)
    """

    def __init__(self, orders: OrderRepository, credentials: CredentialStore) -> None:
        self._orders = orders
        self._credentials = credentials

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, org_id: str, order_id: str) -> Order:
        order = self._orders.get_order(org_id, order_id)
        if order is None:
            raise NotFound(detail=f"order {order_id}")
        return order

    def _duplicates(self, org_id: str, fields: dict[str, Any]) -> list[Order]:
        """Orders with the same client phone and amount on the same delivery day."""
        day = _delivery_day(fields["delivery_at"])
        candidates = self._orders.find_orders_for_client(org_id, fields["client_phone"], fields["amount"])
        return [o for o in candidates if _delivery_day(o.delivery_at) == day]

    def _check_assignees(self, org_id: str, fields: dict[str, Any]) -> None:
        """Assigned florist/courier must be users of the same organization."""
        for key in ("florist_id", "courier_id"):
            user_id = fields.get(key)
            if user_id is None:
                continue
            user = self._credentials.find_user_by_id(user_id)
            if user is None or user.organization_id != org_id:
                raise NotFound(detail=f"user {user_id}")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_order(
        self,
        ctx: SessionContext,
        fields: dict[str, Any],
        organization_id: Optional[str] = None,
        force: bool = False,
    ) -> Order:
        """Create an order in status NEW. OWNER or MANAGER only.

        organization_id may be supplied by the client but must equal the
        caller's own organization.

        Raises DuplicateOrder when an order with the same client phone and
        amount already exists for the same delivery day, unless force is set.
        The check is advisory: it guards against double entry, not against
        two managers submitting at the same instant.
        """
        require_role(ctx, *ORDER_MANAGERS)
        org_id = scope_organization(ctx, organization_id)

        fields = {k: v for k, v in fields.items() if v is not None}
        unknown = set(fields) - _CREATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown order fields: {unknown!r}")
        missing = [k for k in _REQUIRED_CREATE_FIELDS if k not in fields]
        if missing:
            raise ValueError(f"Missing order fields: {missing!r}")
        self._check_assignees(org_id, fields)
        if not force:
            duplicates = self._duplicates(org_id, fields)
            if duplicates:
                numbers = ", ".join(f"#{o.order_number}" for o in duplicates)
                raise DuplicateOrder(duplicates, detail=f"matching orders: {numbers}")

        order = self._orders.create_order(
            Order(organization_id=org_id, manager_id=ctx.user.id, **fields),
            changed_by=ctx.user.id,
        )
        logger.info("Order %s #%s created by %s", order.id, order.order_number, ctx.user.id)
        return order

    def get_order(self, ctx: SessionContext, order_id: str) -> Order:
        return self._load(scope_organization(ctx), order_id)

    def list_orders(self, ctx: SessionContext, status: Optional[OrderStatus] = None) -> list[Order]:
        """List the organization's orders visible to the caller.

        OWNER and MANAGER see everything. A FLORIST sees orders assigned to
        them plus unassigned NEW orders; a COURIER sees orders assigned to
        them plus unassigned ASSEMBLED orders.
        """
        orders = self._orders.list_orders(scope_organization(ctx), status)
        if has_role(ctx, *ORDER_MANAGERS):
            return orders
        me = ctx.user.id
        if ctx.user.role == Role.FLORIST:
            return [o for o in orders if o.florist_id == me or (o.florist_id is None and o.status == OrderStatus.NEW)]
        if ctx.user.role == Role.COURIER:
            return [
                o for o in orders if o.courier_id == me or (o.courier_id is None and o.status == OrderStatus.ASSEMBLED)
            ]
        return []

    def update_order(self, ctx: SessionContext, order_id: str, fields: dict[str, Any]) -> Order:
        """Update non-status fields. OWNER or MANAGER only. Last write wins."""
        require_role(ctx, *ORDER_MANAGERS)
        org_id = scope_organization(ctx)
        if "status" in fields:
            raise ValueError("Use the status endpoint to change an order's status")
        cleared = [k for k in _NOT_NULL_FIELDS if k in fields and fields[k] is None]
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {cleared!r}")
        self._check_assignees(org_id, fields)
        updated = self._orders.update_order(org_id, order_id, **fields)
        if updated is None:
            raise NotFound(detail=f"order {order_id}")
        return updated

    def delete_order(self, ctx: SessionContext, order_id: str) -> None:
        require_role(ctx, *ORDER_MANAGERS)
        if not self._orders.delete_order(scope_organization(ctx), order_id):
            raise NotFound(detail=f"order {order_id}")
        logger.info("Order %s deleted by %s", order_id, ctx.user.id)

    def get_history(self, ctx: SessionContext, order_id: str) -> list[OrderHistoryEntry]:
        org_id = scope_organization(ctx)
        self._load(org_id, order_id)
        return self._orders.get_history(org_id, order_id)

    def release_user(self, org_id: str, user_id: str) -> None:
        """Clear a deleted user from the organization's order assignments and history.

        The detach hook for auth.staff.delete_staff().
        """
        self._orders.detach_user(org_id, user_id)
        logger.info("Orders of organization %s released deleted user %s", org_id, user_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def transition(
        self,
        ctx: SessionContext,
        order_id: str,
        new_status: OrderStatus,
        note: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Order:
        """Move an order to new_status along a permitted edge.

        Raises NotFound, InvalidTransition, Conflict (lost a race from a
        status that still permits the move; retryable) or DeadlineExceeded.
        """
        new_status = OrderStatus(new_status)
        org_id = scope_organization(ctx)
        order = self._load(org_id, order_id)
        check_transition(order.status, new_status)
        check_deadline(deadline, "transition")

        if self._orders.compare_and_set_status(
            org_id, order_id, order.status, new_status, changed_by=ctx.user.id, note=note
        ):
            logger.info(
                "Order %s: %s -> %s by %s", order_id, order.status.value, new_status.value, ctx.user.id
            )
            return self._load(org_id, order_id)

        self._lost_race(org_id, order_id, order.status, new_status)

    def claim_order(self, ctx: SessionContext, order_id: str, deadline: Optional[float] = None) -> Order:
        """Self-assign an unassigned order and start the caller's step.

        A FLORIST takes a NEW order into IN_WORK; a COURIER takes an
        ASSEMBLED order onto ON_DELIVERY. The assignment and the status
        change are one conditional write.
        """
        claim = _CLAIMS.get(ctx.user.role)
        if claim is None:
            raise Forbidden("Only florists and couriers can claim orders.")
        field, from_status, to_status = claim

        org_id = scope_organization(ctx)
        order = self._load(org_id, order_id)
        if getattr(order, field) is not None:
            raise Conflict(detail=f"order {order_id} is already assigned")
        if order.status != from_status:
            raise InvalidTransition(
                detail=f"only {from_status.value} orders can be claimed, order is {order.status.value}"
            )
        check_deadline(deadline, "claim")

        if self._orders.compare_and_set_status(
            org_id,
            order_id,
            from_status,
            to_status,
            changed_by=ctx.user.id,
            note=f"Claimed by {ctx.user.name}",
            assign=(field, ctx.user.id),
        ):
            logger.info("Order %s claimed by %s (%s)", order_id, ctx.user.id, ctx.user.role.value)
            return self._load(org_id, order_id)

        current = self._load(org_id, order_id)
        if getattr(current, field) is not None:
            logger.info("Order %s: claim by %s lost the race", order_id, ctx.user.id)
            raise Conflict(detail=f"order {order_id} is already assigned")
        self._lost_race(org_id, order_id, from_status, to_status)

    def claim_orders(
        self, ctx: SessionContext, order_ids: list[str], deadline: Optional[float] = None
    ) -> list[Order]:
        """Courier batch claim: take every listed ASSEMBLED order still unassigned.

        Each order is claimed with its own compare-and-set. Orders that are
        missing, foreign, already assigned or not ASSEMBLED are skipped.
        Returns the claimed orders in request order. An exceeded deadline
        stops the batch with DeadlineExceeded; claims made before it stay.
        """
        if ctx.user.role != Role.COURIER:
            raise Forbidden("Only couriers can claim orders in a batch.")
        order_ids = list(dict.fromkeys(order_ids))
        if not order_ids:
            raise ValueError("order_ids must not be empty")
        if len(order_ids) > MAX_BATCH_CLAIM:
            raise ValueError(f"At most {MAX_BATCH_CLAIM} orders can be claimed at once")

        claimed = []
        for order_id in order_ids:
            try:
                claimed.append(self.claim_order(ctx, order_id, deadline=deadline))
            except (NotFound, Conflict, InvalidTransition) as exc:
                logger.info("Batch claim by %s skipped order %s: %s", ctx.user.id, order_id, exc.code)
        logger.info("Courier %s claimed %d of %d orders", ctx.user.id, len(claimed), len(order_ids))
        return claimed

    def _lost_race(self, org_id: str, order_id: str, observed: OrderStatus, new_status: OrderStatus):
        """Classify a failed compare-and-set. Always raises."""
        current = self._load(org_id, order_id)
        logger.info(
            "Order %s: %s -> %s lost the race (now %s)",
            order_id,
            observed.value,
            new_status.value,
            current.status.value,
        )
        if not can_transition(current.status, new_status):
            raise InvalidTransition(
                detail=f"{current.status.value} -> {new_status.value} not allowed (status changed concurrently)"
            )
        raise Conflict(detail=f"order {order_id} changed from {observed.value} to {current.status.value}")
