"""
api/routes/v1/orders.py -- Order REST endpoints.

Routes:
  GET    /api/v1/orders                      -- orders visible to the caller (?status= filter)
  POST   /api/v1/orders                      -- create an order (OWNER, MANAGER)
  GET    /api/v1/orders/{order_id}           -- order detail
  PATCH  /api/v1/orders/{order_id}           -- edit non-status fields (OWNER, MANAGER)
  DELETE /api/v1/orders/{order_id}           -- delete order and history (OWNER, MANAGER)
  POST   /api/v1/orders/{order_id}/status    -- status transition
  POST   /api/v1/orders/{order_id}/claim     -- florist/courier self-assignment
  POST   /api/v1/orders/batch-claim          -- courier claims several ASSEMBLED orders
  GET    /api/v1/orders/{order_id}/history   -- status history, oldest first

Every handler passes the SessionContext to OrderService, which scopes all
reads and writes to the caller's organization. Orders of other
organizations are not_found, never forbidden.

Handlers are plain def: Starlette runs them in its thread pool, so blocking
store calls never stall the event loop.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    BatchClaimRequest,
    BatchClaimResponse,
    OrderCreate,
    OrderHistoryRow,
    OrderPatch,
    OrderResponse,
    OrderStatusUpdate,
)
from auth.dependencies import get_session, require_roles
from auth.guard import ORDER_MANAGERS
from auth.models import SessionContext
from core.config import get_settings
from core.deadline import deadline_after
from orders.models import OrderStatus
from orders.service import OrderService

# Auth policy:
# - GET    /api/v1/orders[/{id}[/history]]: requires auth (get_session); visibility per role
# - POST   /api/v1/orders:                  requires OWNER or MANAGER
# - PATCH  /api/v1/orders/{id}:             requires OWNER or MANAGER
# - DELETE /api/v1/orders/{id}:             requires OWNER or MANAGER
# - POST   /api/v1/orders/{id}/status:      requires auth (get_session)
# - POST   /api/v1/orders/{id}/claim:       requires FLORIST or COURIER (enforced in OrderService)
# - POST   /api/v1/orders/batch-claim:      requires COURIER (enforced in OrderService)
router = APIRouter()

_require_manager = require_roles(*ORDER_MANAGERS)


def _service(request: Request) -> OrderService:
    return request.app.state.order_service


@router.get("/orders", response_model=list[OrderResponse])
def list_orders(
    request: Request,
    status: Optional[OrderStatus] = Query(default=None),
    ctx: SessionContext = Depends(get_session),
) -> list[OrderResponse]:
    """List orders, latest delivery first.

    OWNER and MANAGER see all orders; FLORIST and COURIER see the orders
    assigned to them plus the unassigned ones they could claim.
    """
    return [OrderResponse.from_order(o) for o in _service(request).list_orders(ctx, status)]


@router.post("/orders", response_model=OrderResponse, status_code=201)
def create_order(
    request: Request,
    body: OrderCreate,
    ctx: SessionContext = Depends(_require_manager),
) -> OrderResponse:
    """Create an order in status NEW.

    409 duplicate_order lists orders with the same client phone and amount on
    the same delivery day; resubmit with force=true to create anyway.
    """
    fields = body.model_dump(exclude={"organization_id", "force"}, exclude_none=True)
    order = _service(request).create_order(ctx, fields, organization_id=body.organization_id, force=body.force)
    return OrderResponse.from_order(order)


@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(request: Request, order_id: str, ctx: SessionContext = Depends(get_session)) -> OrderResponse:
    return OrderResponse.from_order(_service(request).get_order(ctx, order_id))


@router.patch("/orders/{order_id}", response_model=OrderResponse)
def update_order(
    request: Request,
    order_id: str,
    body: OrderPatch,
    ctx: SessionContext = Depends(_require_manager),
) -> OrderResponse:
    """Edit non-status fields. Concurrent edits are last-write-wins."""
    order = _service(request).update_order(ctx, order_id, body.model_dump(exclude_unset=True))
    return OrderResponse.from_order(order)


@router.delete("/orders/{order_id}", status_code=204)
def delete_order(request: Request, order_id: str, ctx: SessionContext = Depends(_require_manager)) -> Response:
    _service(request).delete_order(ctx, order_id)
    return Response(status_code=204)


@router.post("/orders/{order_id}/status", response_model=OrderResponse)
def change_status(
    request: Request,
    order_id: str,
    body: OrderStatusUpdate,
    ctx: SessionContext = Depends(get_session),
) -> OrderResponse:
    """Move the order along a permitted edge of the status workflow.

    409 invalid_transition: the edge is not allowed from the current status.
    409 conflict: another request changed the status first; safe to retry.
    """
    order = _service(request).transition(
        ctx,
        order_id,
        body.status,
        note=body.note,
        deadline=deadline_after(get_settings().request_timeout_seconds),
    )
    return OrderResponse.from_order(order)


@router.post("/orders/{order_id}/claim", response_model=OrderResponse)
def claim_order(request: Request, order_id: str, ctx: SessionContext = Depends(get_session)) -> OrderResponse:
    """Self-assign: a florist takes a NEW order into work, a courier an ASSEMBLED one onto delivery."""
    order = _service(request).claim_order(
        ctx, order_id, deadline=deadline_after(get_settings().request_timeout_seconds)
    )
    return OrderResponse.from_order(order)


@router.get("/orders/{order_id}/history", response_model=list[OrderHistoryRow])
def order_history(request: Request, order_id: str, ctx: SessionContext = Depends(get_session)) -> list[OrderHistoryRow]:
    return [OrderHistoryRow.from_entry(e) for e in _service(request).get_history(ctx, order_id)]


@router.post("/orders/batch-claim", response_model=BatchClaimResponse)
def batch_claim(
    request: Request,
    body: BatchClaimRequest,
    ctx: SessionContext = Depends(get_session),
) -> BatchClaimResponse:
    """Courier takes every listed order that is still ASSEMBLED and unassigned."""
    claimed = _service(request).claim_orders(
        ctx, body.order_ids, deadline=deadline_after(get_settings().request_timeout_seconds)
    )
    return BatchClaimResponse(claimed=len(claimed), orders=[OrderResponse.from_order(o) for o in claimed])
