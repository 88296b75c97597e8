"""
core/errors.py -- Domain error taxonomy shared by auth/ and orders/.

Every recoverable outcome the core can report has its own exception class.
Each class carries the HTTP status and machine-readable code the API layer
uses when it renders the error envelope, so route handlers never translate
errors by hand. None of these errors is fatal to the process.

Layer rule: core/ is the kernel. No imports from api/, auth/, or orders/.
"""

from __future__ import annotations


class FloraOpsError(Exception):
    """Base class for every domain error the API reports as a distinct outcome."""

    status_code: int = 400
    code: str = "error"
    message: str = "Request failed."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        super().__init__(message or self.message)
        self.detail = detail

    @property
    def text(self) -> str:
        return self.args[0]


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class DuplicateEmail(FloraOpsError):
    status_code = 409
    code = "duplicate_email"
    message = "Email already registered."


class InvalidCredentials(FloraOpsError):
    """Unknown email or wrong password. Deliberately does not say which."""

    status_code = 401
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountDeactivated(FloraOpsError):
    status_code = 403
    code = "account_deactivated"
    message = "Account is deactivated."


class Unauthenticated(FloraOpsError):
    """Missing, unknown, or expired session token."""

    status_code = 401
    code = "unauthenticated"
    message = "Authentication required."


# ---------------------------------------------------------------------------
# Authorization and resources
# ---------------------------------------------------------------------------


class Forbidden(FloraOpsError):
    status_code = 403
    code = "forbidden"
    message = "You do not have permission to perform this action."


class NotFound(FloraOpsError):
    """Absent resource, or one that belongs to another organization."""

    status_code = 404
    code = "not_found"
    message = "Resource not found."


# ---------------------------------------------------------------------------
# Order lifecycle
# ---------------------------------------------------------------------------


class InvalidTransition(FloraOpsError):
    status_code = 409
    code = "invalid_transition"
    message = "Order status change is not allowed."


class Conflict(FloraOpsError):
    """A concurrent write won the race. The caller may re-read and retry."""

    status_code = 409
    code = "conflict"
    message = "The order was modified concurrently. Reload and retry."


class DuplicateOrder(FloraOpsError):
    """Same client phone and amount already booked for that delivery day.

    duplicates holds the matching orders so the client can show them and
    resubmit with force.
    """

    status_code = 409
    code = "duplicate_order"
    message = "Possible duplicate order found."

    def __init__(self, duplicates: list, detail: str | None = None) -> None:
        super().__init__(detail=detail)
        self.duplicates = duplicates


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class Unavailable(FloraOpsError):
    status_code = 503
    code = "unavailable"
    message = "Service temporarily unavailable."


class DeadlineExceeded(Unavailable):
    status_code = 504
    code = "deadline_exceeded"
    message = "The request did not complete in time."
