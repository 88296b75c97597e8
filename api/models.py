"""
API request and response models for FloraOps REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
orders/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Organization, Role, User
from orders.models import Order, OrderHistoryEntry, OrderStatus, PaymentStatus
from orders.service import MAX_BATCH_CLAIM

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# bcrypt inputs are prehashed, so this bound only caps request size.
PASSWORD_MIN = 8
PASSWORD_MAX = 128

# Deliberately loose: one "@" with a dot in the domain part. Deliverability is not checked.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Creates a new organization with the caller as its OWNER.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    name: str = Field(min_length=1, max_length=255)
    organization_name: str = Field(min_length=1, max_length=255)
    registration_code: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No length rule on password here: a login attempt with a short password
    must fail as invalid credentials, not as a validation error that reveals
    the password policy.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """A user as exposed over HTTP. password_hash is never included."""

    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    email: str
    name: str
    role: Role
    phone: Optional[str] = None
    is_active: bool
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            organization_id=user.organization_id,
            email=user.email,
            name=user.name,
            role=user.role,
            phone=user.phone,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: Optional[str] = None

    @classmethod
    def from_organization(cls, org: Organization) -> "OrganizationResponse":
        return cls(id=org.id, name=org.name, created_at=org.created_at)


class AuthResponse(BaseModel):
    """Response for register and login. The token is also set as a cookie."""

    model_config = ConfigDict(frozen=True)

    token: str
    user: UserResponse
    organization: OrganizationResponse


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    organization: OrganizationResponse


# ---------------------------------------------------------------------------
# Staff
# ---------------------------------------------------------------------------


class StaffCreate(BaseModel):
    """Request body for POST /api/v1/users. OWNER only."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    name: str = Field(min_length=1, max_length=255)
    role: Role = Role.MANAGER
    phone: Optional[str] = Field(default=None, max_length=50)


class StaffPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{user_id}.

    Omitted fields are left unchanged. role and is_active require OWNER.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    password: Optional[str] = Field(default=None, min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Orders -- requests
# ---------------------------------------------------------------------------


class OrderCreate(BaseModel):
    """Request body for POST /api/v1/orders.

    Status is not accepted: every order starts NEW. organization_id is
    optional and must match the caller's organization when present.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    client_name: str = Field(min_length=1, max_length=255)
    client_phone: str = Field(min_length=1, max_length=50)
    address: str = Field(min_length=1, max_length=1000)
    delivery_at: str = Field(min_length=1, max_length=32, description="ISO 8601 delivery time")
    delivery_until: Optional[str] = Field(default=None, max_length=32)
    amount: int = Field(ge=0, description="Minor currency units")
    comment: Optional[str] = Field(default=None, max_length=2000)
    payment_status: PaymentStatus = PaymentStatus.NOT_PAID
    florist_id: Optional[str] = None
    courier_id: Optional[str] = None
    organization_id: Optional[str] = None
    force: bool = Field(default=False, description="Create even if a possible duplicate exists")


class OrderPatch(BaseModel):
    """Request body for PATCH /api/v1/orders/{order_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    client_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    client_phone: Optional[str] = Field(default=None, min_length=1, max_length=50)
    address: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    delivery_at: Optional[str] = Field(default=None, min_length=1, max_length=32)
    delivery_until: Optional[str] = Field(default=None, max_length=32)
    amount: Optional[int] = Field(default=None, ge=0)
    comment: Optional[str] = Field(default=None, max_length=2000)
    payment_status: Optional[PaymentStatus] = None
    florist_id: Optional[str] = None
    courier_id: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    """Request body for POST /api/v1/orders/{order_id}/status."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=1000)


class BatchClaimRequest(BaseModel):
    """Request body for POST /api/v1/orders/batch-claim. COURIER only."""

    order_ids: list[str] = Field(min_length=1, max_length=MAX_BATCH_CLAIM)


# ---------------------------------------------------------------------------
# Orders -- responses
# ---------------------------------------------------------------------------


class OrderResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    order_number: int
    status: OrderStatus
    client_name: str
    client_phone: str
    address: str
    delivery_at: str
    delivery_until: Optional[str] = None
    amount: int
    comment: Optional[str] = None
    payment_status: PaymentStatus
    manager_id: Optional[str] = None
    florist_id: Optional[str] = None
    courier_id: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        """Factory Method: the domain-to-transport mapping lives beside the model."""
        return cls(
            id=order.id,
            organization_id=order.organization_id,
            order_number=order.order_number,
            status=order.status,
            client_name=order.client_name,
            client_phone=order.client_phone,
            address=order.address,
            delivery_at=order.delivery_at,
            delivery_until=order.delivery_until,
            amount=order.amount,
            comment=order.comment,
            payment_status=order.payment_status,
            manager_id=order.manager_id,
            florist_id=order.florist_id,
            courier_id=order.courier_id,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class BatchClaimResponse(BaseModel):
    """Response for POST /api/v1/orders/batch-claim. Skipped orders are simply absent."""

    model_config = ConfigDict(frozen=True)

    claimed: int
    orders: list[OrderResponse]


class OrderHistoryRow(BaseModel):
    """One entry of GET /api/v1/orders/{order_id}/history."""

    model_config = ConfigDict(frozen=True)

    id: int
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    changed_by_user_id: Optional[str] = None
    changed_at: str
    note: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: OrderHistoryEntry) -> "OrderHistoryRow":
        return cls(
            id=entry.id,
            from_status=entry.from_status,
            to_status=entry.to_status,
            changed_by_user_id=entry.changed_by_user_id,
            changed_at=entry.changed_at,
            note=entry.note,
        )
