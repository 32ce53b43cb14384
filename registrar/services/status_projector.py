"""
Status projector: the one place derived payment/registration status is computed.

Pure functions, no database access. Both the payment processor and the refund
reconciliation engine go through here, so "paid", "refunded" and
"payment complete" mean the same thing on every write path. The ``write_*``
helpers copy a projection onto ORM objects already loaded by the caller.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

import pytz

from registrar.database.models import (
    PaymentStatus,
    RefundEntryStatus,
    RefundStatus,
    RegistrationStatus,
)
from registrar.services.errors import InvalidRequest
from registrar.utils.datetime_utils import ensure_aware

# Refund entries that reduce the refundable balance. Failed refunds never moved money.
COUNTED_REFUND_STATUSES = frozenset(
    {RefundEntryStatus.PENDING.value, RefundEntryStatus.COMPLETED.value}
)

# Registration state machine
_VALID_TRANSITIONS = {
    RegistrationStatus.PENDING.value: {RegistrationStatus.PAID.value, RegistrationStatus.FAILED.value},
    RegistrationStatus.FAILED.value: {RegistrationStatus.PENDING.value, RegistrationStatus.PAID.value},
    RegistrationStatus.PAID.value: {RegistrationStatus.REFUNDED.value},
    RegistrationStatus.REFUNDED.value: set(),
}


@dataclass(frozen=True)
class PaymentProjection:
    """Derived refund bookkeeping for a payment."""

    refunded_amount: int
    refund_status: str
    status: str


@dataclass(frozen=True)
class RegistrationProjection:
    """Derived fields of a season/tournament entry."""

    payment_complete: bool
    payment_status: str


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


def refunded_total(refunds: Iterable) -> int:
    """
    Sum the refund entries that count against a payment.

    Args:
        refunds: Objects with integer ``amount`` and ``status`` attributes
            (Refund rows or gateway RefundEvents)

    Returns:
        Total in minor units
    """
    return sum(int(r.amount) for r in refunds if _value(r.status) in COUNTED_REFUND_STATUSES)


def settled_refund_total(refunds: Iterable) -> int:
    """Sum only the refunds the gateway has completed."""
    return sum(int(r.amount) for r in refunds if _value(r.status) == RefundEntryStatus.COMPLETED.value)


def refund_settled(amount: int, refunds: Iterable) -> bool:
    """
    True once completed refunds cover the whole payment.

    A pending refund reserves the balance but can still fail at the gateway,
    so covered registrations only become refunded when this holds.
    """
    return settled_refund_total(refunds) >= int(amount)


def project_payment_status(amount: int, refunds: Iterable, current_status: str) -> PaymentProjection:
    """
    Derive refunded_amount, refund_status and payment status from the refund ledger.

    A payment that never completed keeps its status; a completed payment becomes
    ``refunded`` once its counted refunds cover the full amount (and goes back to
    ``completed`` if a pending refund later fails).

    Args:
        amount: Charged amount in minor units
        refunds: The payment's refund entries
        current_status: The payment's stored status

    Returns:
        PaymentProjection
    """
    refunded = refunded_total(refunds)
    if refunded <= 0:
        refund_status = RefundStatus.NONE.value
    elif refunded >= amount:
        refund_status = RefundStatus.FULL.value
    else:
        refund_status = RefundStatus.PARTIAL.value

    status = _value(current_status)
    if status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        if refund_status == RefundStatus.FULL.value:
            status = PaymentStatus.REFUNDED.value
        else:
            status = PaymentStatus.COMPLETED.value

    return PaymentProjection(refunded_amount=refunded, refund_status=refund_status, status=status)


def registration_status_for_payment(payment_status: str) -> str:
    """Map a payment status onto the status of the registrations it covers."""
    mapping = {
        PaymentStatus.PENDING.value: RegistrationStatus.PENDING.value,
        PaymentStatus.COMPLETED.value: RegistrationStatus.PAID.value,
        PaymentStatus.FAILED.value: RegistrationStatus.FAILED.value,
        PaymentStatus.REFUNDED.value: RegistrationStatus.REFUNDED.value,
    }
    return mapping[_value(payment_status)]


def project_registration_status(payment_status: str) -> RegistrationProjection:
    """
    Derive the fields stored on a season/tournament entry from its payment status.

    Args:
        payment_status: One of pending, paid, failed, refunded

    Returns:
        RegistrationProjection
    """
    status = _value(payment_status)
    if status not in _VALID_TRANSITIONS:
        raise InvalidRequest(f"Unknown registration status: {status}")
    return RegistrationProjection(
        payment_complete=status == RegistrationStatus.PAID.value,
        payment_status=status,
    )


def project_guardian_payment_complete(statuses: Iterable[str]) -> bool:
    """True iff the guardian has at least one registration and all of them are paid."""
    statuses = [_value(s) for s in statuses]
    return bool(statuses) and all(s == RegistrationStatus.PAID.value for s in statuses)


def can_transition(current: str, target: str) -> bool:
    return _value(target) in _VALID_TRANSITIONS.get(_value(current), set())


def assert_registration_transition(current: str, target: str) -> None:
    """
    Raise InvalidRequest unless ``current -> target`` is a legal registration move.

    Allowed: pending -> paid|failed, failed -> pending|paid, paid -> refunded.
    Refunded is terminal.
    """
    if not can_transition(current, target):
        raise InvalidRequest(
            f"Registration cannot move from '{_value(current)}' to '{_value(target)}'"
        )


def split_amount(total: int, parts: int) -> List[int]:
    """
    Split an amount in minor units into ``parts`` integer shares.

    Remainder cents go to the first shares, so the shares always sum to ``total``.
    """
    if parts <= 0:
        raise ValueError("parts must be positive")
    base, remainder = divmod(int(total), parts)
    return [base + 1] * remainder + [base] * (parts - remainder)


def latest_entry(entries: Sequence):
    """
    Return the most recently registered entry (ties broken by id), or None.

    This is how the "current season" of a player (or current tournament of a
    team) is derived; it is never stored.
    """
    if not entries:
        return None
    floor = datetime.min.replace(tzinfo=pytz.UTC)
    return max(entries, key=lambda e: (ensure_aware(e.registration_date) or floor, e.id or 0))


def write_registration_status(
    entry,
    registration,
    status: str,
    amount_paid: Optional[int] = None,
    gateway_payment_id: Optional[str] = None,
) -> RegistrationProjection:
    """
    Write one status into an entry and its mirrored Registration row together.

    Args:
        entry: SeasonRegistration or TournamentRegistration
        registration: The Registration row with the same identity key
        status: Target registration status
        amount_paid: Share of the payment (only written when given)
        gateway_payment_id: Payment reference (only written when given)

    Returns:
        The projection that was written
    """
    projection = project_registration_status(status)
    entry.payment_status = projection.payment_status
    entry.payment_complete = projection.payment_complete
    registration.payment_status = projection.payment_status
    if amount_paid is not None:
        entry.amount_paid = amount_paid
        registration.amount_paid = amount_paid
    if gateway_payment_id is not None:
        entry.gateway_payment_id = gateway_payment_id
    return projection


def write_payment_projection(payment) -> PaymentProjection:
    """Recompute and store refunded_amount, refund_status and status on a loaded Payment."""
    projection = project_payment_status(payment.amount, payment.refunds, payment.status)
    payment.refunded_amount = projection.refunded_amount
    payment.refund_status = projection.refund_status
    payment.status = projection.status
    return projection
