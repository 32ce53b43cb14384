"""
Error taxonomy for registration and payment operations.

Every error carries the HTTP status the API layer should answer with and a
short machine-readable code. Routes let these propagate; the app-level
exception handler in registrar/api/main.py turns them into JSON responses.
"""

from typing import Optional


class RegistrarError(Exception):
    """Base class for all registrar errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        # Fall back to the first line of the class docstring
        self.message = message or (self.__class__.__doc__ or "").strip().splitlines()[0]
        super().__init__(self.message)


class InvalidRequest(RegistrarError):
    """The request is malformed or violates a precondition. Nothing was charged."""

    status_code = 400
    code = "invalid_request"


class NotFound(RegistrarError):
    """The referenced record does not exist."""

    status_code = 404
    code = "not_found"


class Forbidden(RegistrarError):
    """The caller does not own the referenced record."""

    status_code = 403
    code = "forbidden"


class DuplicateRegistration(RegistrarError):
    """A registration with the same identity already exists and is settled."""

    status_code = 409
    code = "duplicate_registration"


class RegistrationConflict(RegistrarError):
    """Another charge currently holds the lock on this registration."""

    status_code = 409
    code = "registration_conflict"


class GatewayDeclined(RegistrarError):
    """The payment gateway declined the charge. No local records were changed."""

    status_code = 402
    code = "gateway_declined"

    def __init__(self, message: str = "", gateway_status: Optional[str] = None):
        super().__init__(message)
        self.gateway_status = gateway_status


class GatewayTimeout(RegistrarError):
    """The payment gateway did not answer in time; the charge outcome is unknown."""

    status_code = 504
    code = "gateway_timeout"

    def __init__(self, message: str = "", idempotency_key: Optional[str] = None):
        super().__init__(message)
        self.idempotency_key = idempotency_key


class GatewayUnavailable(RegistrarError):
    """The payment gateway could not be reached; the charge outcome is unknown."""

    status_code = 503
    code = "gateway_unavailable"

    def __init__(self, message: str = "", idempotency_key: Optional[str] = None):
        super().__init__(message)
        self.idempotency_key = idempotency_key


class LocalCommitFailed(RegistrarError):
    """Payment received, confirmation pending."""

    status_code = 500
    code = "payment_confirmation_pending"

    def __init__(
        self,
        message: str = "",
        gateway_payment_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ):
        # The user-facing message never says the payment failed: money moved.
        super().__init__(message or "Payment received, confirmation pending")
        self.gateway_payment_id = gateway_payment_id
        self.idempotency_key = idempotency_key


class ReconciliationConflict(RegistrarError):
    """
    Two refund events share a gateway refund id but disagree on the amount,
    or a new refund would push the payment past its charged amount.

    Recorded on the reconcile result and flagged for manual review; not raised.
    """

    status_code = 409
    code = "reconciliation_conflict"

    def __init__(
        self,
        message: str = "",
        gateway_refund_id: Optional[str] = None,
        kept_amount: Optional[int] = None,
        incoming_amount: Optional[int] = None,
    ):
        super().__init__(message)
        self.gateway_refund_id = gateway_refund_id
        self.kept_amount = kept_amount
        self.incoming_amount = incoming_amount
