"""
Payment intent processor.

Takes exactly one charge at the gateway and makes its success durable across
every record it pays for, or leaves no partial effect:

1. Journal a ChargeAttempt and lock the target registrations (one commit).
2. Call the gateway outside any transaction.
3. Mirror the confirmed charge locally in one transaction: Payment row,
   paid status on every entry/Registration pair, guardian aggregate.
4. After commit, queue the confirmation email.

A gateway success whose local write never landed (timeout, crash, commit
failure) is left as an open ChargeAttempt; resolve_charge_attempt() and the
recover_orphaned_charges() sweep replay it through the same idempotent commit.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from registrar.database.models import (
    ChargeAttempt,
    ChargeAttemptStatus,
    Guardian,
    Payment,
    PaymentStatus,
    PaymentStatusChange,
    Registration,
    RegistrationKind,
    RegistrationStatus,
)
from registrar.gateway import get_gateway
from registrar.gateway.port import ChargeResult, GatewayChargeStatus, LedgerGateway
from registrar.services import email_service, registration_service, status_projector
from registrar.services.errors import (
    DuplicateRegistration,
    GatewayDeclined,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidRequest,
    LocalCommitFailed,
    NotFound,
    RegistrationConflict,
)
from registrar.services.notification_dispatcher import get_notification_dispatcher
from registrar.utils.constants import (
    DEFAULT_ABANDONED_CHARGE_RECHECK_SECONDS,
    DEFAULT_ORPHAN_CHARGE_GRACE_SECONDS,
    SUPPORTED_CURRENCIES,
)
from registrar.utils.datetime_utils import ensure_aware, utcnow
from registrar.utils.env_utils import get_float_env

logger = logging.getLogger(__name__)

# Attempts whose outcome has not been mirrored locally yet
OPEN_ATTEMPT_STATUSES = (
    ChargeAttemptStatus.STARTED.value,
    ChargeAttemptStatus.UNKNOWN.value,
    ChargeAttemptStatus.SUCCEEDED.value,
    ChargeAttemptStatus.COMMIT_FAILED.value,
)

# Gateway clocks and ours may disagree; look a little further back than the attempt
FIND_CHARGE_LOOKBACK = timedelta(minutes=5)


def get_orphan_grace_seconds() -> float:
    return get_float_env("ORPHAN_CHARGE_GRACE_SECONDS", DEFAULT_ORPHAN_CHARGE_GRACE_SECONDS)


def get_abandoned_recheck_seconds() -> float:
    return get_float_env("ABANDONED_CHARGE_RECHECK_SECONDS", DEFAULT_ABANDONED_CHARGE_RECHECK_SECONDS)


@dataclass
class CardSummary:
    """Non-sensitive card details shown back to the guardian."""

    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None


@dataclass
class PaymentResult:
    payment: Payment
    registrations: List[Registration]
    idempotency_key: str
    replayed: bool = False
    # Registrations that could not be marked paid (payment flagged for review)
    conflicts: List[int] = field(default_factory=list)


@dataclass
class AttemptResolution:
    idempotency_key: str
    status: str
    payment: Optional[Payment] = None
    detail: Optional[str] = None


@dataclass
class OrphanSweepSummary:
    processed: int = 0
    committed: int = 0
    declined: int = 0
    abandoned: int = 0
    # Abandoned earlier, looked up again and still not at the gateway
    rechecked: int = 0
    unresolved: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "committed": self.committed,
            "declined": self.declined,
            "abandoned": self.abandoned,
            "rechecked": self.rechecked,
            "unresolved": self.unresolved,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _validate_charge_request(
    source_token: str,
    amount: int,
    registration_ids: List[int],
    buyer_email: str,
    currency: str,
) -> str:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidRequest("Amount must be a positive integer in minor units")
    currency = (currency or "").upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise InvalidRequest(f"Currency must be one of: {', '.join(SUPPORTED_CURRENCIES)}")
    if not registration_ids:
        raise InvalidRequest("At least one registration is required")
    if len(set(registration_ids)) != len(registration_ids):
        raise InvalidRequest("Registration ids must be distinct")
    if not buyer_email or "@" not in buyer_email:
        raise InvalidRequest("A valid buyer email is required")
    if not source_token:
        raise InvalidRequest("A payment source token is required")
    return currency


async def _check_targets(
    session: AsyncSession, guardian_id: int, registration_ids: List[int], is_admin: bool
) -> List[Registration]:
    """Every target must exist, belong to the guardian and be pending and unlocked."""
    result = await session.execute(
        select(Registration).where(Registration.id.in_(registration_ids)).order_by(Registration.id)
    )
    registrations = list(result.scalars().all())
    found = {r.id for r in registrations}
    missing = [rid for rid in registration_ids if rid not in found]
    if missing:
        raise InvalidRequest(f"Registrations not found: {missing}")

    if any(r.guardian_id != registrations[0].guardian_id for r in registrations):
        raise InvalidRequest("All registrations in one payment must belong to the same guardian")

    for registration in registrations:
        if not is_admin and registration.guardian_id != guardian_id:
            raise InvalidRequest(f"Registration {registration.id} does not belong to this guardian")
        if registration.payment_status in (RegistrationStatus.PAID.value, RegistrationStatus.REFUNDED.value):
            raise DuplicateRegistration(
                f"Registration {registration.id} is already {registration.payment_status}"
            )
        if registration.payment_status != RegistrationStatus.PENDING.value:
            raise InvalidRequest(
                f"Registration {registration.id} is {registration.payment_status}; register again before paying"
            )
        if registration.charge_attempt_id is not None:
            raise RegistrationConflict(f"Registration {registration.id} has a payment in progress")
    return registrations


async def _lock_failure(session: AsyncSession, registration_ids: List[int]) -> Exception:
    """Work out why the conditional lock UPDATE did not take every row."""
    result = await session.execute(select(Registration).where(Registration.id.in_(registration_ids)))
    for registration in result.scalars().all():
        if registration.payment_status in (RegistrationStatus.PAID.value, RegistrationStatus.REFUNDED.value):
            return DuplicateRegistration(f"Registration {registration.id} is already {registration.payment_status}")
    return RegistrationConflict("Another payment for these registrations is in progress")


async def journal_charge_attempt(
    session: AsyncSession,
    guardian_id: int,
    amount: int,
    currency: str,
    registration_ids: List[int],
    buyer_email: str,
    card: Optional[CardSummary] = None,
    package_type: Optional[str] = None,
) -> ChargeAttempt:
    """
    Write the intent journal entry and take the identity lock on every target.

    The lock is a single conditional UPDATE; if it does not take every row the
    whole attempt is rolled back and nothing is left behind.

    Raises:
        DuplicateRegistration: A target was paid in the meantime
        RegistrationConflict: Another attempt holds the lock on a target
    """
    card = card or CardSummary()
    attempt = ChargeAttempt(
        idempotency_key=uuid4().hex,
        guardian_id=guardian_id,
        amount=amount,
        currency=currency,
        buyer_email=buyer_email.strip().lower(),
        registration_ids=json.dumps(sorted(registration_ids)),
        package_type=package_type,
        card_brand=card.brand,
        card_last4=card.last4,
        card_exp_month=card.exp_month,
        card_exp_year=card.exp_year,
        status=ChargeAttemptStatus.STARTED.value,
    )
    session.add(attempt)
    await session.flush()

    result = await session.execute(
        update(Registration)
        .where(
            Registration.id.in_(registration_ids),
            Registration.charge_attempt_id.is_(None),
            Registration.payment_status == RegistrationStatus.PENDING.value,
        )
        .values(charge_attempt_id=attempt.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(registration_ids):
        await session.rollback()
        raise await _lock_failure(session, registration_ids)

    await session.commit()
    logger.info(
        f"Charge attempt {attempt.idempotency_key} opened for guardian {guardian_id}: "
        f"{amount} {currency} over registrations {sorted(registration_ids)}"
    )
    return attempt


async def _get_attempt(session: AsyncSession, idempotency_key: str) -> ChargeAttempt:
    result = await session.execute(
        select(ChargeAttempt).where(ChargeAttempt.idempotency_key == idempotency_key)
    )
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise NotFound(f"Charge attempt {idempotency_key} not found")
    return attempt


async def _mark_attempt(session: AsyncSession, attempt_id: int, status: str, **fields) -> None:
    """Update an attempt's status (and any extra columns) in its own commit."""
    attempt = await session.get(ChargeAttempt, attempt_id)
    attempt.status = status
    for name, value in fields.items():
        setattr(attempt, name, value)
    await session.commit()


async def _release_locks(session: AsyncSession, attempt_id: int, mark_failed: bool = False) -> List[Registration]:
    """Drop the identity lock held by an attempt; optionally mark the targets failed."""
    result = await session.execute(
        select(Registration).where(Registration.charge_attempt_id == attempt_id).order_by(Registration.id)
    )
    registrations = list(result.scalars().all())
    for registration in registrations:
        registration.charge_attempt_id = None
        if mark_failed and status_projector.can_transition(
            registration.payment_status, RegistrationStatus.FAILED.value
        ):
            entry = await registration_service.get_entry_for_registration(session, registration)
            if entry is not None:
                status_projector.write_registration_status(entry, registration, RegistrationStatus.FAILED.value)
            else:
                registration.payment_status = RegistrationStatus.FAILED.value
    if mark_failed:
        for guardian_id in {r.guardian_id for r in registrations}:
            await registration_service.recompute_guardian_payment_complete(session, guardian_id)
    return registrations


async def _load_payment(session: AsyncSession, gateway_payment_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment)
        .options(selectinload(Payment.registrations), selectinload(Payment.refunds))
        .where(Payment.gateway_payment_id == gateway_payment_id)
    )
    return result.scalar_one_or_none()


def _charge_from_attempt(attempt: ChargeAttempt) -> ChargeResult:
    """Rebuild a confirmed charge from what the journal recorded when the gateway answered."""
    return ChargeResult(
        id=attempt.gateway_payment_id,
        status=GatewayChargeStatus.COMPLETED,
        amount=attempt.amount,
        currency=attempt.currency,
        receipt_url=attempt.receipt_url,
        reference_id=attempt.idempotency_key,
        location_id=attempt.location_id,
        card_brand=attempt.card_brand,
        card_last4=attempt.card_last4,
        card_exp_month=attempt.card_exp_month,
        card_exp_year=attempt.card_exp_year,
    )


async def commit_gateway_charge(
    session: AsyncSession,
    attempt_id: int,
    charge: ChargeResult,
    _retried: bool = False,
) -> PaymentResult:
    """
    Mirror a gateway-confirmed charge locally in one transaction.

    Idempotent on the gateway payment id: if the Payment row already exists
    (replay from the sweep, a concurrent resolver, a retried request) the
    existing row is returned and nothing is written twice.

    Args:
        session: Database session (no transaction may be open with pending writes)
        attempt_id: The ChargeAttempt that produced the charge
        charge: The confirmed charge

    Returns:
        PaymentResult
    """
    attempt = await session.get(ChargeAttempt, attempt_id)
    if attempt is None:
        raise NotFound(f"Charge attempt {attempt_id} not found")

    existing = await _load_payment(session, charge.id)
    if existing is not None:
        await _release_locks(session, attempt.id)
        attempt.status = ChargeAttemptStatus.COMMITTED.value
        attempt.gateway_payment_id = charge.id
        await session.commit()
        logger.info(f"Gateway payment {charge.id} already recorded; replay of {attempt.idempotency_key} is a no-op")
        return PaymentResult(
            payment=existing,
            registrations=list(existing.registrations),
            idempotency_key=attempt.idempotency_key,
            replayed=True,
        )

    registration_ids = json.loads(attempt.registration_ids)
    result = await session.execute(
        select(Registration).where(Registration.id.in_(registration_ids)).order_by(Registration.id)
    )
    registrations = list(result.scalars().all())

    payment = Payment(
        gateway_payment_id=charge.id,
        guardian_id=attempt.guardian_id,
        idempotency_key=attempt.idempotency_key,
        location_id=charge.location_id or attempt.location_id,
        amount=charge.amount or attempt.amount,
        currency=charge.currency or attempt.currency,
        status=PaymentStatus.COMPLETED.value,
        receipt_url=charge.receipt_url,
        card_brand=charge.card_brand or attempt.card_brand,
        card_last4=charge.card_last4 or attempt.card_last4,
        card_exp_month=charge.card_exp_month or attempt.card_exp_month,
        card_exp_year=charge.card_exp_year or attempt.card_exp_year,
        refunded_amount=0,
        processed_at=charge.created_at or utcnow(),
        registrations=[],
        refunds=[],
        status_history=[],
    )
    session.add(payment)
    try:
        await session.flush()
    except IntegrityError:
        # Someone else inserted this gateway payment first; take the replay path
        await session.rollback()
        if _retried:
            raise
        return await commit_gateway_charge(session, attempt_id, charge, _retried=True)

    # Re-validate at commit time: each target must still be held by this attempt
    conflicts = []
    shares = status_projector.split_amount(payment.amount, max(len(registrations), 1))
    paid = []
    for share, registration in zip(shares, registrations):
        held = registration.charge_attempt_id in (None, attempt.id)
        if not held or not status_projector.can_transition(
            registration.payment_status, RegistrationStatus.PAID.value
        ):
            conflicts.append(registration.id)
            continue
        entry = await registration_service.get_entry_for_registration(session, registration)
        if entry is None:
            conflicts.append(registration.id)
            continue
        status_projector.write_registration_status(
            entry,
            registration,
            RegistrationStatus.PAID.value,
            amount_paid=share,
            gateway_payment_id=charge.id,
        )
        entry.payment_method = "card"
        entry.card_brand = payment.card_brand
        entry.card_last4 = payment.card_last4
        if registration.kind == RegistrationKind.SEASON.value and attempt.package_type:
            entry.package_type = attempt.package_type
        if registration.kind == RegistrationKind.TOURNAMENT.value:
            entry.payment_date = payment.processed_at
        registration.payment = payment
        registration.charge_attempt_id = None
        paid.append(registration)

    if conflicts:
        payment.needs_review = True
        payment.review_note = f"Charge captured but registrations {conflicts} could not be marked paid"
        logger.error(
            f"Gateway payment {charge.id} captured but registrations {conflicts} "
            f"were taken by another payment; flagged for review"
        )
        # Conflicting rows may still carry this attempt's lock
        for registration in registrations:
            if registration.id in conflicts and registration.charge_attempt_id == attempt.id:
                registration.charge_attempt_id = None

    payment.status_history.append(
        PaymentStatusChange(
            status=PaymentStatus.COMPLETED.value,
            reason=f"Charge captured ({attempt.idempotency_key})",
        )
    )
    await registration_service.recompute_guardian_payment_complete(session, attempt.guardian_id)

    attempt.status = ChargeAttemptStatus.COMMITTED.value
    attempt.gateway_payment_id = charge.id
    attempt.gateway_status = charge.status
    attempt.receipt_url = charge.receipt_url
    await session.commit()

    logger.info(
        f"Payment {payment.id} (gateway {charge.id}) committed: {payment.amount} {payment.currency} "
        f"for registrations {[r.id for r in paid]}"
    )
    return PaymentResult(
        payment=payment,
        registrations=paid,
        idempotency_key=attempt.idempotency_key,
        conflicts=conflicts,
    )


async def _commit_or_flag(session: AsyncSession, attempt_id: int, idempotency_key: str, charge: ChargeResult) -> PaymentResult:
    """commit_gateway_charge, turning any failure into LocalCommitFailed."""
    try:
        return await commit_gateway_charge(session, attempt_id, charge)
    except Exception as e:
        logger.error(
            f"Gateway payment {charge.id} captured but local commit failed "
            f"(attempt {idempotency_key}): {e}",
            exc_info=True,
        )
        await session.rollback()
        try:
            await _mark_attempt(
                session,
                attempt_id,
                ChargeAttemptStatus.COMMIT_FAILED.value,
                gateway_payment_id=charge.id,
                error=str(e)[:1000],
            )
        except Exception as mark_error:
            logger.error(f"Could not flag attempt {idempotency_key} as commit_failed: {mark_error}")
            await session.rollback()
        raise LocalCommitFailed(gateway_payment_id=charge.id, idempotency_key=idempotency_key) from e


def _notify_payment(result: PaymentResult, buyer_email: Optional[str]) -> None:
    """
    Queue the confirmation email. Must only run after the payment committed.

    The payment is durable by now, so a failure here is logged and dropped
    rather than reported as a failed charge.
    """
    if result.replayed:
        return
    payment = result.payment
    try:
        get_notification_dispatcher().enqueue(
            email_service.PAYMENT_CONFIRMATION,
            buyer_email,
            {
                "amount": payment.amount,
                "currency": payment.currency,
                "registration_count": len(result.registrations),
                "card_brand": payment.card_brand,
                "card_last4": payment.card_last4,
                "gateway_payment_id": payment.gateway_payment_id,
                "receipt_url": payment.receipt_url,
                "guardian_id": payment.guardian_id,
            },
        )
    except Exception as e:
        logger.error(
            f"Could not queue confirmation for payment {payment.gateway_payment_id} "
            f"({result.idempotency_key}): {e}",
            exc_info=True,
        )


async def charge(
    session: AsyncSession,
    guardian_id: int,
    source_token: str,
    amount: int,
    registration_ids: List[int],
    buyer_email: str,
    card: Optional[CardSummary] = None,
    currency: str = "USD",
    package_type: Optional[str] = None,
    is_admin: bool = False,
    gateway: Optional[LedgerGateway] = None,
) -> PaymentResult:
    """
    Charge a card for one or more pending registrations.

    Args:
        session: Database session
        guardian_id: Requesting guardian
        source_token: Single-use card token from the payment form
        amount: Total in minor units (e.g. 105000 for $1,050.00)
        registration_ids: Registrations this payment covers
        buyer_email: Receipt/confirmation address
        card: Card summary from the payment form
        currency: USD or CAD
        package_type: Package purchased (copied onto season entries)
        is_admin: Admins may pay for any guardian's registrations
        gateway: Gateway override (defaults to the configured gateway)

    Returns:
        PaymentResult

    Raises:
        InvalidRequest: Precondition failed; nothing was charged
        DuplicateRegistration: A target is already paid; nothing was charged
        RegistrationConflict: A target is locked by another attempt; nothing was charged
        GatewayDeclined: The gateway declined; no local effect
        GatewayTimeout / GatewayUnavailable: Outcome unknown; re-query by idempotency key
        LocalCommitFailed: Charged, local write failed; the sweep will finish it
    """
    gateway = gateway or get_gateway()
    currency = _validate_charge_request(source_token, amount, registration_ids, buyer_email, currency)

    targets = await _check_targets(session, guardian_id, registration_ids, is_admin)
    owner_id = targets[0].guardian_id
    await session.rollback()  # end the read transaction before journaling

    attempt = await journal_charge_attempt(
        session,
        guardian_id=owner_id,
        amount=amount,
        currency=currency,
        registration_ids=registration_ids,
        buyer_email=buyer_email,
        card=card,
        package_type=package_type,
    )
    attempt_id = attempt.id
    idempotency_key = attempt.idempotency_key
    buyer_email = attempt.buyer_email

    metadata = {
        "buyer_email": attempt.buyer_email,
        "note": f"Registration payment (guardian {owner_id}, {len(registration_ids)} registration(s))",
    }
    try:
        result = await gateway.charge(idempotency_key, source_token, amount, currency, metadata)
    except (GatewayTimeout, GatewayUnavailable) as e:
        logger.warning(f"Charge attempt {idempotency_key} outcome unknown: {e.message}")
        await _mark_attempt(session, attempt_id, ChargeAttemptStatus.UNKNOWN.value, error=e.message[:1000])
        e.idempotency_key = idempotency_key
        raise
    except Exception as e:
        logger.error(f"Charge attempt {idempotency_key} failed unexpectedly: {e}", exc_info=True)
        await _mark_attempt(session, attempt_id, ChargeAttemptStatus.UNKNOWN.value, error=str(e)[:1000])
        raise GatewayUnavailable(f"Payment gateway error: {e}", idempotency_key=idempotency_key) from e

    if not result.succeeded:
        await _release_locks(session, attempt_id)
        await _mark_attempt(
            session,
            attempt_id,
            ChargeAttemptStatus.DECLINED.value,
            gateway_payment_id=result.id or None,
            gateway_status=result.status,
            error=result.failure_reason,
        )
        logger.info(f"Charge attempt {idempotency_key} declined: {result.status} {result.failure_reason}")
        raise GatewayDeclined(
            f"Payment was not completed: {result.failure_reason or result.status}",
            gateway_status=result.status,
        )

    # Journal the gateway's answer before the local write
    await _mark_attempt(
        session,
        attempt_id,
        ChargeAttemptStatus.SUCCEEDED.value,
        gateway_payment_id=result.id,
        gateway_status=result.status,
        receipt_url=result.receipt_url,
        location_id=result.location_id,
        card_brand=result.card_brand or attempt.card_brand,
        card_last4=result.card_last4 or attempt.card_last4,
        card_exp_month=result.card_exp_month or attempt.card_exp_month,
        card_exp_year=result.card_exp_year or attempt.card_exp_year,
    )

    payment_result = await _commit_or_flag(session, attempt_id, idempotency_key, result)
    _notify_payment(payment_result, buyer_email)
    return payment_result


async def _recheck_abandoned(
    session: AsyncSession,
    attempt: ChargeAttempt,
    gateway: LedgerGateway,
) -> AttemptResolution:
    """
    Look an abandoned attempt up at the gateway again.

    Attempts are abandoned when the gateway shows no charge within the grace
    period, but a lost charge can surface later. Its locks are gone by then, so
    the late charge is committed against the registrations as they are now:
    any target paid in the meantime becomes a commit-time conflict and the
    payment is flagged for review.
    """
    idempotency_key = attempt.idempotency_key
    attempt_id = attempt.id
    buyer_email = attempt.buyer_email
    created_at = ensure_aware(attempt.created_at)
    detail = attempt.error
    await session.rollback()

    found = await gateway.find_charge(idempotency_key, begin_time=created_at - FIND_CHARGE_LOOKBACK)
    if found is None or not found.succeeded:
        return AttemptResolution(idempotency_key, ChargeAttemptStatus.ABANDONED.value, detail=detail)

    logger.warning(f"Abandoned charge attempt {idempotency_key} surfaced at the gateway as {found.id}")
    result = await _commit_or_flag(session, attempt_id, idempotency_key, found)
    _notify_payment(result, buyer_email)
    return AttemptResolution(idempotency_key, ChargeAttemptStatus.COMMITTED.value, payment=result.payment)


async def resolve_charge_attempt(
    session: AsyncSession,
    idempotency_key: str,
    gateway: Optional[LedgerGateway] = None,
    grace_seconds: Optional[float] = None,
) -> AttemptResolution:
    """
    Settle an attempt whose outcome was never mirrored locally by asking the gateway.

    - completed at the gateway: commit it locally (idempotent)
    - failed at the gateway: release the locks and mark the targets failed
    - unknown to the gateway and older than the grace period: abandoned, locks released
    - otherwise: left open

    An abandoned attempt is looked up once more and committed if its charge
    has turned up since.

    Raises:
        NotFound: No attempt with that key
        GatewayTimeout / GatewayUnavailable: The gateway could not be asked
        LocalCommitFailed: The gateway charge exists but could not be recorded
    """
    gateway = gateway or get_gateway()
    grace = get_orphan_grace_seconds() if grace_seconds is None else grace_seconds
    attempt = await _get_attempt(session, idempotency_key)

    if attempt.status == ChargeAttemptStatus.COMMITTED.value:
        payment = await _load_payment(session, attempt.gateway_payment_id)
        return AttemptResolution(idempotency_key, attempt.status, payment=payment)
    if attempt.status == ChargeAttemptStatus.ABANDONED.value:
        return await _recheck_abandoned(session, attempt, gateway)
    if attempt.status not in OPEN_ATTEMPT_STATUSES:
        return AttemptResolution(idempotency_key, attempt.status, detail=attempt.error)

    attempt_id = attempt.id
    attempt_status = attempt.status
    buyer_email = attempt.buyer_email
    created_at = ensure_aware(attempt.created_at)
    known_charge = _charge_from_attempt(attempt) if attempt.gateway_payment_id else None
    await session.rollback()

    found = await gateway.find_charge(idempotency_key, begin_time=created_at - FIND_CHARGE_LOOKBACK)
    if found is None and known_charge is not None:
        found = known_charge

    if found is not None and found.succeeded:
        result = await _commit_or_flag(session, attempt_id, idempotency_key, found)
        _notify_payment(result, buyer_email)
        logger.info(f"Recovered charge attempt {idempotency_key} as gateway payment {found.id}")
        return AttemptResolution(idempotency_key, ChargeAttemptStatus.COMMITTED.value, payment=result.payment)

    if found is not None and found.status == GatewayChargeStatus.FAILED:
        await _release_locks(session, attempt_id, mark_failed=True)
        await _mark_attempt(
            session,
            attempt_id,
            ChargeAttemptStatus.DECLINED.value,
            gateway_payment_id=found.id or None,
            gateway_status=found.status,
        )
        logger.info(f"Charge attempt {idempotency_key} failed at the gateway; registrations marked failed")
        return AttemptResolution(idempotency_key, ChargeAttemptStatus.DECLINED.value, detail="Declined by gateway")

    if found is not None:
        return AttemptResolution(idempotency_key, attempt_status, detail=f"Gateway status {found.status}")

    age = (utcnow() - created_at).total_seconds()
    if age >= grace:
        await _release_locks(session, attempt_id)
        await _mark_attempt(
            session,
            attempt_id,
            ChargeAttemptStatus.ABANDONED.value,
            error="Charge never reached the gateway",
        )
        logger.info(f"Charge attempt {idempotency_key} abandoned after {int(age)}s; locks released")
        return AttemptResolution(idempotency_key, ChargeAttemptStatus.ABANDONED.value)

    return AttemptResolution(idempotency_key, attempt_status, detail="Not yet visible at the gateway")


async def recover_orphaned_charges(
    session: AsyncSession,
    older_than_seconds: Optional[float] = None,
    gateway: Optional[LedgerGateway] = None,
    recheck_seconds: Optional[float] = None,
) -> OrphanSweepSummary:
    """
    Resolve every open charge attempt older than the grace period.

    Attempts abandoned within the last ``recheck_seconds`` are looked up again,
    so a charge the gateway only showed after the grace period still gets
    recorded. Each attempt is resolved independently; one failure is recorded
    and the sweep moves on.
    """
    grace = get_orphan_grace_seconds() if older_than_seconds is None else older_than_seconds
    recheck = get_abandoned_recheck_seconds() if recheck_seconds is None else recheck_seconds
    now = utcnow()
    cutoff = now - timedelta(seconds=grace)
    result = await session.execute(
        select(ChargeAttempt.idempotency_key, ChargeAttempt.status)
        .where(
            ChargeAttempt.created_at <= cutoff,
            or_(
                ChargeAttempt.status.in_(OPEN_ATTEMPT_STATUSES),
                and_(
                    ChargeAttempt.status == ChargeAttemptStatus.ABANDONED.value,
                    ChargeAttempt.created_at >= now - timedelta(seconds=recheck),
                ),
            ),
        )
        .order_by(ChargeAttempt.id)
    )
    rows = result.all()
    keys = [row.idempotency_key for row in rows]
    previously_abandoned = {
        row.idempotency_key for row in rows if row.status == ChargeAttemptStatus.ABANDONED.value
    }
    await session.rollback()

    summary = OrphanSweepSummary()
    if not keys:
        return summary

    logger.info(f"Found {len(keys)} charge attempt(s) to resolve ({len(previously_abandoned)} rechecks)")
    for key in keys:
        summary.processed += 1
        try:
            resolution = await resolve_charge_attempt(session, key, gateway=gateway, grace_seconds=grace)
        except Exception as e:
            logger.error(f"Error resolving charge attempt {key}: {e}", exc_info=True)
            await session.rollback()
            summary.failed += 1
            summary.errors.append(f"{key}: {e}")
            continue

        if resolution.status == ChargeAttemptStatus.COMMITTED.value:
            summary.committed += 1
        elif resolution.status == ChargeAttemptStatus.DECLINED.value:
            summary.declined += 1
        elif resolution.status == ChargeAttemptStatus.ABANDONED.value and key in previously_abandoned:
            summary.rechecked += 1
        elif resolution.status == ChargeAttemptStatus.ABANDONED.value:
            summary.abandoned += 1
        else:
            summary.unresolved += 1

    logger.info(
        f"Orphaned charge sweep: {summary.committed} committed, {summary.declined} declined, "
        f"{summary.abandoned} abandoned, {summary.rechecked} rechecked, {summary.unresolved} unresolved, "
        f"{summary.failed} failed"
    )
    return summary


async def get_charge_attempt(session: AsyncSession, idempotency_key: str) -> ChargeAttempt:
    return await _get_attempt(session, idempotency_key)


async def get_payment(session: AsyncSession, payment_id: int) -> Payment:
    result = await session.execute(
        select(Payment)
        .options(
            selectinload(Payment.registrations),
            selectinload(Payment.refunds),
            selectinload(Payment.status_history),
        )
        .where(Payment.id == payment_id)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


async def list_guardian_payments(session: AsyncSession, guardian_id: int) -> List[Payment]:
    """Payment history for a guardian, newest first, with refunds loaded."""
    guardian = await session.get(Guardian, guardian_id)
    if guardian is None:
        raise NotFound(f"Guardian {guardian_id} not found")
    result = await session.execute(
        select(Payment)
        .options(selectinload(Payment.registrations), selectinload(Payment.refunds))
        .where(Payment.guardian_id == guardian_id)
        .order_by(Payment.id.desc())
    )
    return list(result.scalars().all())
