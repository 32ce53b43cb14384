"""Payment route handlers: charging, attempt lookup, payment history."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from registrar.api.auth_dependencies import ensure_guardian_access, get_current_identity
from registrar.api.routes import CHARGE_RATE_LIMIT, limiter
from registrar.database.db import get_db_session
from registrar.database.models import Payment, Registration
from registrar.models.schemas import (
    ChargeAttemptResponse,
    ChargeRequest,
    ChargeResponse,
    PaymentResponse,
    RefundResponse,
    RegistrationResponse,
)
from registrar.services import payment_service
from registrar.services.errors import RegistrarError

logger = logging.getLogger(__name__)
router = APIRouter()


def payment_to_response(
    payment: Payment, registrations: Optional[List[Registration]] = None
) -> PaymentResponse:
    """Build the response from a payment whose registrations and refunds are loaded."""
    covered = payment.registrations if registrations is None else registrations
    return PaymentResponse(
        id=payment.id,
        gateway_payment_id=payment.gateway_payment_id,
        guardian_id=payment.guardian_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        receipt_url=payment.receipt_url,
        card_brand=payment.card_brand,
        card_last4=payment.card_last4,
        refunded_amount=payment.refunded_amount or 0,
        refund_status=payment.refund_status,
        needs_review=bool(payment.needs_review),
        processed_at=payment.processed_at,
        registration_ids=sorted(r.id for r in covered),
        refunds=[RefundResponse.model_validate(r) for r in payment.refunds],
    )


@router.post("/api/payments/charge", response_model=ChargeResponse, status_code=201)
@limiter.limit(CHARGE_RATE_LIMIT)
async def charge(
    request: Request,
    payload: ChargeRequest,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Charge a card for one or more pending registrations.

    On a gateway timeout the response carries the idempotency key; poll
    GET /api/payments/attempts/{idempotency_key} for the final outcome.
    """
    card = None
    if payload.card is not None:
        card = payment_service.CardSummary(
            brand=payload.card.brand,
            last4=payload.card.last4,
            exp_month=payload.card.exp_month,
            exp_year=payload.card.exp_year,
        )
    try:
        result = await payment_service.charge(
            session,
            guardian_id=identity["guardian_id"],
            source_token=payload.source_token,
            amount=payload.amount,
            registration_ids=payload.registration_ids,
            buyer_email=payload.buyer_email,
            card=card,
            currency=payload.currency,
            package_type=payload.package_type,
            is_admin=identity["is_admin"],
        )
        return ChargeResponse(
            payment=payment_to_response(result.payment),
            idempotency_key=result.idempotency_key,
            registrations=[RegistrationResponse.model_validate(r) for r in result.registrations],
            replayed=result.replayed,
            conflicts=result.conflicts,
        )
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error processing charge: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error processing payment")


@router.get("/api/payments/attempts/{idempotency_key}", response_model=ChargeAttemptResponse)
async def get_charge_attempt(
    idempotency_key: str,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """Final outcome of a charge attempt; an open attempt is resolved against the gateway first."""
    try:
        attempt = await payment_service.get_charge_attempt(session, idempotency_key)
        ensure_guardian_access(identity, attempt.guardian_id)
        resolution = await payment_service.resolve_charge_attempt(session, idempotency_key)
        payment = None
        gateway_payment_id = None
        if resolution.payment is not None:
            payment = payment_to_response(resolution.payment)
            gateway_payment_id = resolution.payment.gateway_payment_id
        return ChargeAttemptResponse(
            idempotency_key=idempotency_key,
            status=resolution.status,
            gateway_payment_id=gateway_payment_id,
            detail=resolution.detail,
            payment=payment,
        )
    except (RegistrarError, HTTPException):
        raise
    except Exception as e:
        logger.error(f"Error resolving charge attempt {idempotency_key}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error resolving charge attempt")


@router.get("/api/guardians/{guardian_id}/payments", response_model=List[PaymentResponse])
async def list_guardian_payments(
    guardian_id: int,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """Payment history for a guardian, newest first."""
    ensure_guardian_access(identity, guardian_id)
    try:
        payments = await payment_service.list_guardian_payments(session, guardian_id)
        return [payment_to_response(p) for p in payments]
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error listing payments for guardian {guardian_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error listing payments")
