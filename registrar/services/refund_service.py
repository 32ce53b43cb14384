"""
Refund reconciliation engine.

Keeps the local refund ledger eventually consistent with the gateway,
including refunds issued outside this system (e.g. from the gateway
dashboard). Reconciliation and direct refunds both go through
merge_refund_events(), a set-union keyed by the gateway refund id: applying
the same refund event any number of times has the same effect as applying it
once. All amounts are integer minor units.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from registrar.database.models import (
    Guardian,
    Payment,
    PaymentStatus,
    PaymentStatusChange,
    Refund,
    RefundEntryStatus,
    RefundSource,
    RefundStatus,
    RegistrationStatus,
)
from registrar.gateway import get_gateway
from registrar.gateway.port import LedgerGateway, RefundEvent
from registrar.services import email_service, registration_service, status_projector
from registrar.services.errors import InvalidRequest, NotFound, ReconciliationConflict
from registrar.services.notification_dispatcher import get_notification_dispatcher
from registrar.utils.constants import DATE_RANGE_FALLBACK_DAYS, DEFAULT_REFUND_SYNC_DELAY_SECONDS
from registrar.utils.datetime_utils import ensure_aware, utcnow
from registrar.utils.env_utils import get_float_env

logger = logging.getLogger(__name__)

_REFUND_ENTRY_STATUSES = {s.value for s in RefundEntryStatus}


def get_sync_delay_seconds() -> float:
    return get_float_env("REFUND_SYNC_DELAY_SECONDS", DEFAULT_REFUND_SYNC_DELAY_SECONDS)


@dataclass
class MergeOutcome:
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: int = 0
    conflicts: List[ReconciliationConflict] = field(default_factory=list)
    projection: Optional[status_projector.PaymentProjection] = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.conflicts)


@dataclass
class ReconcileResult:
    payment_id: int
    gateway_payment_id: str
    refunds_added: List[str]
    refunds_updated: List[str]
    refunded_amount: int
    refund_status: str
    status: str
    needs_review: bool
    conflicts: List[Dict] = field(default_factory=list)


@dataclass
class SweepSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    refunds_added: int = 0
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)
    unknown_payments: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "refunds_added": self.refunds_added,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
            "unknown_payments": list(self.unknown_payments),
        }


@dataclass
class RefundEligibility:
    payment_id: int
    gateway_payment_id: str
    amount: int
    refunded_amount: int
    available_amount: int
    currency: str
    status: str
    refund_status: str
    eligible: bool
    reason: Optional[str] = None


def _conflict_dict(conflict: ReconciliationConflict) -> Dict:
    return {
        "gateway_refund_id": conflict.gateway_refund_id,
        "kept_amount": conflict.kept_amount,
        "incoming_amount": conflict.incoming_amount,
        "detail": conflict.message,
    }


def _flag_for_review(payment: Payment, note: str) -> None:
    payment.needs_review = True
    if payment.review_note and note in payment.review_note:
        return
    payment.review_note = f"{payment.review_note}\n{note}" if payment.review_note else note


def merge_refund_events(
    payment: Payment,
    events: Iterable[RefundEvent],
    source: str = RefundSource.GATEWAY_SYNC.value,
) -> MergeOutcome:
    """
    Merge gateway refund events into a payment's refund ledger.

    The payment's ``refunds`` collection must be loaded. Rules, per event:
    - unknown refund id: appended, unless it would push the counted refunds
      past the payment amount (skipped, conflict recorded, flagged for review)
    - known id, same amount: a pending entry may advance to completed/failed;
      anything else is a no-op
    - known id, different amount: the first amount is kept, a conflict is
      recorded and the payment is flagged for review

    Afterwards refunded_amount, refund_status and status are recomputed
    through the status projector.

    Args:
        payment: Payment with refunds loaded
        events: Refund events for this payment
        source: Where the events came from (direct or gateway_sync)

    Returns:
        MergeOutcome
    """
    outcome = MergeOutcome()
    by_id = {refund.gateway_refund_id: refund for refund in payment.refunds}

    for event in events:
        if event.payment_id and event.payment_id != payment.gateway_payment_id:
            logger.warning(
                f"Ignoring refund {event.id} for payment {event.payment_id} "
                f"while reconciling {payment.gateway_payment_id}"
            )
            continue
        amount = int(event.amount)
        status = event.status if event.status in _REFUND_ENTRY_STATUSES else RefundEntryStatus.PENDING.value

        existing = by_id.get(event.id)
        if existing is not None:
            if existing.amount != amount:
                conflict = ReconciliationConflict(
                    f"Refund {event.id} on payment {payment.gateway_payment_id} reported as "
                    f"{amount}, already recorded as {existing.amount}; keeping the first",
                    gateway_refund_id=event.id,
                    kept_amount=existing.amount,
                    incoming_amount=amount,
                )
                outcome.conflicts.append(conflict)
                _flag_for_review(payment, conflict.message)
                logger.warning(conflict.message)
            elif existing.status == RefundEntryStatus.PENDING.value and status != existing.status:
                existing.status = status
                if event.processed_at:
                    existing.processed_at = event.processed_at
                outcome.updated.append(event.id)
            else:
                outcome.unchanged += 1
            continue

        if amount <= 0:
            logger.warning(f"Ignoring refund {event.id} with non-positive amount {amount}")
            continue

        counted = status_projector.refunded_total(payment.refunds)
        if status in status_projector.COUNTED_REFUND_STATUSES and counted + amount > payment.amount:
            conflict = ReconciliationConflict(
                f"Refund {event.id} of {amount} would exceed payment {payment.gateway_payment_id} "
                f"amount {payment.amount} (already refunded {counted}); not applied",
                gateway_refund_id=event.id,
                kept_amount=counted,
                incoming_amount=amount,
            )
            outcome.conflicts.append(conflict)
            _flag_for_review(payment, conflict.message)
            logger.warning(conflict.message)
            continue

        refund = Refund(
            gateway_refund_id=event.id,
            amount=amount,
            reason=event.reason,
            status=status,
            source=source,
            processed_at=event.processed_at or utcnow(),
        )
        payment.refunds.append(refund)
        by_id[event.id] = refund
        outcome.added.append(event.id)

    previous_status = payment.status
    outcome.projection = status_projector.write_payment_projection(payment)
    if payment.status != previous_status:
        payment.status_history.append(
            PaymentStatusChange(
                status=payment.status,
                reason=f"Refund reconciliation ({outcome.projection.refund_status}, "
                f"{outcome.projection.refunded_amount} refunded)",
            )
        )
    return outcome


async def _load_payment(session: AsyncSession, gateway_payment_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment)
        .options(
            selectinload(Payment.refunds),
            selectinload(Payment.registrations),
            selectinload(Payment.status_history),
        )
        .where(Payment.gateway_payment_id == gateway_payment_id)
    )
    return result.scalar_one_or_none()


async def _apply_registration_effects(session: AsyncSession, payment: Payment, previous_status: str) -> None:
    """
    Move covered registrations to refunded once completed refunds cover the payment.

    While part of a full refund is still pending the payment already reads
    refunded, but its registrations stay paid until the gateway settles it.
    """
    if payment.status == PaymentStatus.REFUNDED.value:
        if not status_projector.refund_settled(payment.amount, payment.refunds):
            logger.info(
                f"Payment {payment.gateway_payment_id} fully refunded pending settlement; "
                f"registrations stay paid for now"
            )
            return
        guardian_ids = set()
        for registration in payment.registrations:
            if not status_projector.can_transition(registration.payment_status, RegistrationStatus.REFUNDED.value):
                continue
            entry = await registration_service.get_entry_for_registration(session, registration)
            if entry is None:
                registration.payment_status = RegistrationStatus.REFUNDED.value
            else:
                status_projector.write_registration_status(entry, registration, RegistrationStatus.REFUNDED.value)
            guardian_ids.add(registration.guardian_id)
        for guardian_id in guardian_ids:
            await registration_service.recompute_guardian_payment_complete(session, guardian_id)
    elif previous_status == PaymentStatus.REFUNDED.value:
        refunded = [
            r.id for r in payment.registrations if r.payment_status == RegistrationStatus.REFUNDED.value
        ]
        logger.warning(f"Payment {payment.gateway_payment_id} dropped from refunded back to {payment.status}")
        if refunded:
            # Refunded registrations do not reopen on their own
            _flag_for_review(
                payment,
                f"Payment {payment.gateway_payment_id} is no longer fully refunded; "
                f"registrations {refunded} remain refunded",
            )


async def apply_refund_events(
    session: AsyncSession,
    gateway_payment_id: str,
    events: Sequence[RefundEvent],
    source: str = RefundSource.GATEWAY_SYNC.value,
    _retried: bool = False,
) -> ReconcileResult:
    """
    Merge events into one payment and commit.

    If a concurrent writer inserted the same refund id first, the unique
    constraint rejects our copy; the merge is redone against the stored ledger,
    where the event is then a no-op.
    """
    payment = await _load_payment(session, gateway_payment_id)
    if payment is None:
        raise NotFound(f"Payment {gateway_payment_id} not found")

    previous_status = payment.status
    outcome = merge_refund_events(payment, events, source=source)
    try:
        await _apply_registration_effects(session, payment, previous_status)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if _retried:
            raise
        logger.info(f"Concurrent refund write on payment {gateway_payment_id}; re-merging")
        return await apply_refund_events(session, gateway_payment_id, events, source, _retried=True)

    if outcome.changed:
        logger.info(
            f"Reconciled payment {gateway_payment_id}: +{len(outcome.added)} refund(s), "
            f"{len(outcome.updated)} updated, {len(outcome.conflicts)} conflict(s); "
            f"refunded {payment.refunded_amount}/{payment.amount} ({payment.refund_status})"
        )
    return ReconcileResult(
        payment_id=payment.id,
        gateway_payment_id=gateway_payment_id,
        refunds_added=list(outcome.added),
        refunds_updated=list(outcome.updated),
        refunded_amount=payment.refunded_amount,
        refund_status=payment.refund_status,
        status=payment.status,
        needs_review=bool(payment.needs_review),
        conflicts=[_conflict_dict(c) for c in outcome.conflicts],
    )


async def reconcile_payment(
    session: AsyncSession,
    gateway_payment_id: str,
    gateway: Optional[LedgerGateway] = None,
) -> ReconcileResult:
    """
    Fetch every refund the gateway knows for a payment and merge them locally.

    Args:
        session: Database session
        gateway_payment_id: The gateway's payment id
        gateway: Gateway override

    Returns:
        ReconcileResult
    """
    gateway = gateway or get_gateway()
    result = await session.execute(
        select(Payment.id).where(Payment.gateway_payment_id == gateway_payment_id)
    )
    if result.scalar_one_or_none() is None:
        raise NotFound(f"Payment {gateway_payment_id} not found")
    await session.rollback()  # no transaction held across the gateway call

    events = await gateway.list_refunds(payment_id=gateway_payment_id)
    return await apply_refund_events(session, gateway_payment_id, events)


async def reconcile_all(
    session: AsyncSession,
    refund_statuses: Sequence[str] = (RefundStatus.NONE.value, RefundStatus.PARTIAL.value),
    delay_seconds: Optional[float] = None,
    gateway: Optional[LedgerGateway] = None,
) -> SweepSummary:
    """
    Reconcile every completed payment whose refund status is in ``refund_statuses``,
    plus any payment still carrying a pending refund (which the gateway may yet
    complete or reject, whatever the payment currently reads).

    Paced with ``delay_seconds`` between gateway calls. A failure on one
    payment is logged, rolled back and counted; the sweep continues.
    """
    delay = get_sync_delay_seconds() if delay_seconds is None else delay_seconds
    result = await session.execute(
        select(Payment.gateway_payment_id)
        .where(
            or_(
                and_(
                    Payment.status == PaymentStatus.COMPLETED.value,
                    Payment.refund_status.in_(list(refund_statuses)),
                ),
                Payment.refunds.any(Refund.status == RefundEntryStatus.PENDING.value),
            )
        )
        .order_by(Payment.id)
    )
    gateway_payment_ids = list(result.scalars().all())
    await session.rollback()

    summary = SweepSummary()
    if not gateway_payment_ids:
        return summary

    logger.info(f"Reconciling refunds for {len(gateway_payment_ids)} payment(s)")
    for index, gateway_payment_id in enumerate(gateway_payment_ids):
        if index and delay > 0:
            await asyncio.sleep(delay)
        summary.processed += 1
        try:
            reconciled = await reconcile_payment(session, gateway_payment_id, gateway=gateway)
        except Exception as e:
            logger.error(f"Error reconciling payment {gateway_payment_id}: {e}", exc_info=True)
            await session.rollback()
            summary.failed += 1
            summary.errors.append(f"{gateway_payment_id}: {e}")
            continue
        summary.succeeded += 1
        summary.refunds_added += len(reconciled.refunds_added)
        summary.conflicts += len(reconciled.conflicts)

    logger.info(
        f"Refund sweep finished: {summary.succeeded}/{summary.processed} succeeded, "
        f"{summary.refunds_added} refund(s) added, {summary.failed} failed"
    )
    return summary


async def reconcile_by_date_range(
    session: AsyncSession,
    begin: Optional[datetime] = None,
    end: Optional[datetime] = None,
    gateway: Optional[LedgerGateway] = None,
) -> SweepSummary:
    """
    Reconcile every refund the gateway issued in a time window.

    Defaults to the last 30 days. Refunds are grouped by payment; refunds for
    payments this system never recorded are reported in ``unknown_payments``
    and do not fail the batch.
    """
    gateway = gateway or get_gateway()
    end = ensure_aware(end) if end else utcnow()
    begin = ensure_aware(begin) if begin else end - timedelta(days=DATE_RANGE_FALLBACK_DAYS)
    if begin > end:
        raise InvalidRequest("begin must be before end")

    events = await gateway.list_refunds(begin_time=begin, end_time=end)
    grouped: "OrderedDict[str, List[RefundEvent]]" = OrderedDict()
    for event in events:
        grouped.setdefault(event.payment_id, []).append(event)

    summary = SweepSummary()
    for gateway_payment_id, payment_events in grouped.items():
        try:
            exists = await session.execute(
                select(Payment.id).where(Payment.gateway_payment_id == gateway_payment_id)
            )
            if exists.scalar_one_or_none() is None:
                summary.unknown_payments.append(gateway_payment_id)
                continue
            summary.processed += 1
            reconciled = await apply_refund_events(session, gateway_payment_id, payment_events)
        except Exception as e:
            logger.error(f"Error reconciling payment {gateway_payment_id}: {e}", exc_info=True)
            await session.rollback()
            summary.failed += 1
            summary.errors.append(f"{gateway_payment_id}: {e}")
            continue
        summary.succeeded += 1
        summary.refunds_added += len(reconciled.refunds_added)
        summary.conflicts += len(reconciled.conflicts)

    if summary.unknown_payments:
        logger.warning(
            f"{len(summary.unknown_payments)} refunded payment(s) in range are not recorded locally: "
            f"{summary.unknown_payments}"
        )
    logger.info(
        f"Date-range refund sync {begin.isoformat()} - {end.isoformat()}: "
        f"{summary.succeeded} payment(s) reconciled, {summary.refunds_added} refund(s) added"
    )
    return summary


async def _load_payment_by_id(session: AsyncSession, payment_id: int) -> Payment:
    result = await session.execute(
        select(Payment).options(selectinload(Payment.refunds)).where(Payment.id == payment_id)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def _eligibility(payment: Payment) -> RefundEligibility:
    refunded = status_projector.refunded_total(payment.refunds)
    available = max(payment.amount - refunded, 0)
    reason = None
    if payment.status != PaymentStatus.COMPLETED.value:
        reason = f"Payment is {payment.status}"
    elif available <= 0:
        reason = "Payment is fully refunded"
    return RefundEligibility(
        payment_id=payment.id,
        gateway_payment_id=payment.gateway_payment_id,
        amount=payment.amount,
        refunded_amount=refunded,
        available_amount=available,
        currency=payment.currency,
        status=payment.status,
        refund_status=payment.refund_status,
        eligible=reason is None,
        reason=reason,
    )


async def get_refund_eligibility(session: AsyncSession, payment_id: int) -> RefundEligibility:
    """How much of a payment can still be refunded."""
    return _eligibility(await _load_payment_by_id(session, payment_id))


async def request_refund(
    session: AsyncSession,
    payment_id: int,
    amount: int,
    reason: Optional[str] = None,
    gateway: Optional[LedgerGateway] = None,
) -> ReconcileResult:
    """
    Issue a refund at the gateway and record it.

    The gateway's answer is merged through merge_refund_events(), the same path
    reconciliation uses, so a later sync sees the refund as already applied.

    Args:
        session: Database session
        payment_id: Local payment ID
        amount: Refund amount in minor units
        reason: Optional reason shown to the guardian
        gateway: Gateway override

    Returns:
        ReconcileResult

    Raises:
        NotFound, InvalidRequest, GatewayDeclined, GatewayTimeout, GatewayUnavailable
    """
    gateway = gateway or get_gateway()
    payment = await _load_payment_by_id(session, payment_id)
    eligibility = _eligibility(payment)
    if not eligibility.eligible:
        raise InvalidRequest(f"Payment cannot be refunded: {eligibility.reason}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidRequest("Refund amount must be a positive integer in minor units")
    if amount > eligibility.available_amount:
        raise InvalidRequest(
            f"Refund amount {amount} exceeds available amount {eligibility.available_amount}"
        )

    guardian = await session.get(Guardian, payment.guardian_id)
    recipient = guardian.email if guardian else None
    gateway_payment_id = payment.gateway_payment_id
    currency = payment.currency
    await session.rollback()  # no transaction held across the gateway call

    event = await gateway.refund(gateway_payment_id, amount, reason, uuid4().hex, currency=currency)
    result = await apply_refund_events(session, gateway_payment_id, [event], source=RefundSource.DIRECT.value)
    logger.info(f"Refund {event.id} of {amount} issued for payment {gateway_payment_id} ({event.status})")

    if event.id in result.refunds_added and recipient:
        get_notification_dispatcher().enqueue(
            email_service.REFUND_PROCESSED,
            recipient,
            {
                "amount": eligibility.amount,
                "refund_amount": amount,
                "refunded_amount": result.refunded_amount,
                "currency": currency,
                "reason": reason or "Not specified",
                "gateway_payment_id": gateway_payment_id,
            },
        )
    return result
