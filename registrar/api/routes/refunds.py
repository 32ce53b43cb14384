"""Refund route handlers: eligibility, direct refunds and gateway reconciliation."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from registrar.api.auth_dependencies import ensure_guardian_access, get_current_identity, require_admin
from registrar.database.db import get_db_session
from registrar.models.schemas import (
    ReconcileResponse,
    RefundCreate,
    RefundEligibilityResponse,
    RefundSyncRequest,
    RefundSyncResponse,
)
from registrar.services import payment_service, refund_service
from registrar.services.errors import RegistrarError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get(
    "/api/payments/{payment_id}/refund-eligibility",
    response_model=RefundEligibilityResponse,
)
async def get_refund_eligibility(
    payment_id: int,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """How much of a payment can still be refunded."""
    try:
        payment = await payment_service.get_payment(session, payment_id)
        ensure_guardian_access(identity, payment.guardian_id)
        eligibility = await refund_service.get_refund_eligibility(session, payment_id)
        return RefundEligibilityResponse.model_validate(eligibility)
    except (RegistrarError, HTTPException):
        raise
    except Exception as e:
        logger.error(f"Error getting refund eligibility for payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting refund eligibility")


@router.post(
    "/api/payments/{payment_id}/refunds",
    response_model=ReconcileResponse,
    status_code=201,
)
async def create_refund(
    payment_id: int,
    payload: RefundCreate,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Issue a refund at the gateway and record it (admin only)."""
    try:
        result = await refund_service.request_refund(
            session, payment_id, amount=payload.amount, reason=payload.reason
        )
        logger.info(f"Admin {admin['guardian_id']} refunded {payload.amount} on payment {payment_id}")
        return ReconcileResponse.model_validate(result)
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error refunding payment {payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error processing refund")


@router.post(
    "/api/payments/{gateway_payment_id}/reconcile",
    response_model=ReconcileResponse,
)
async def reconcile_payment(
    gateway_payment_id: str,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Pull every refund the gateway knows for one payment and merge it (admin only)."""
    try:
        result = await refund_service.reconcile_payment(session, gateway_payment_id)
        return ReconcileResponse.model_validate(result)
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error reconciling payment {gateway_payment_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error reconciling payment")


@router.post("/api/admin/refunds/sync", response_model=RefundSyncResponse)
async def sync_refunds(
    payload: RefundSyncRequest,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Batch refund sync (admin only).

    With begin/end, only refunds the gateway issued in that window are pulled;
    otherwise every completed, not fully refunded payment is reconciled.
    Optionally resolves orphaned charge attempts first.
    """
    try:
        orphans = None
        if payload.recover_orphans:
            orphans = (await payment_service.recover_orphaned_charges(session)).to_dict()

        if payload.begin or payload.end:
            summary = await refund_service.reconcile_by_date_range(
                session, begin=payload.begin, end=payload.end
            )
        else:
            summary = await refund_service.reconcile_all(session)

        logger.info(f"Admin {admin['guardian_id']} ran refund sync: {summary.to_dict()}")
        return RefundSyncResponse(**summary.to_dict(), orphaned_charges=orphans)
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error running refund sync: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error running refund sync")
