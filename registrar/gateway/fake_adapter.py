"""Configurable in-process payment gateway for development and testing.

Behaves like the real gateway where it matters to callers:
- charges are idempotent on the idempotency key
- refunds are listed per payment or by time window
- timeouts and outages can be simulated, including the case where the charge
  went through but the caller never heard back
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from registrar.gateway.port import (
    ChargeResult,
    GatewayChargeStatus,
    LedgerGateway,
    RefundEvent,
)
from registrar.services.errors import GatewayDeclined, GatewayTimeout, GatewayUnavailable
from registrar.utils.datetime_utils import ensure_aware, utcnow


class FakeGateway(LedgerGateway):
    """Configurable fake ledger gateway."""

    def __init__(self) -> None:
        self.charge_status: str = GatewayChargeStatus.COMPLETED
        self.failure_reason: str = "CARD_DECLINED"
        self.delay_seconds: float = 0.0
        # One-shot failure modes, cleared after they fire
        self.timeout_next: bool = False
        self.unavailable_next: bool = False
        self.lose_response_next: bool = False  # charge is recorded, caller sees a timeout
        self.refund_succeeds: bool = True
        self.location_id: str = "FAKE_LOCATION"

        self.charges: Dict[str, ChargeResult] = {}  # idempotency key -> charge
        self.refunds: Dict[str, List[RefundEvent]] = {}  # payment id -> refunds
        self._refund_keys: Dict[str, RefundEvent] = {}
        self.calls: List[dict] = []

    def configure(
        self,
        charge_status: str = GatewayChargeStatus.COMPLETED,
        failure_reason: str = "CARD_DECLINED",
        delay_seconds: float = 0.0,
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.charge_status = charge_status
        self.failure_reason = failure_reason
        self.delay_seconds = delay_seconds

    def _raise_if_down(self, idempotency_key: Optional[str] = None) -> None:
        if self.timeout_next:
            self.timeout_next = False
            raise GatewayTimeout("Fake gateway timed out", idempotency_key=idempotency_key)
        if self.unavailable_next:
            self.unavailable_next = False
            raise GatewayUnavailable("Fake gateway unavailable", idempotency_key=idempotency_key)

    async def charge(
        self,
        idempotency_key: str,
        source_token: str,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        self.calls.append(
            {
                "method": "charge",
                "idempotency_key": idempotency_key,
                "source_token": source_token,
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata or {}),
            }
        )
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self._raise_if_down(idempotency_key)

        existing = self.charges.get(idempotency_key)
        if existing is not None:
            return existing

        succeeded = self.charge_status == GatewayChargeStatus.COMPLETED
        payment_id = f"fake_pay_{uuid4().hex[:16]}"
        result = ChargeResult(
            id=payment_id,
            status=self.charge_status,
            amount=amount,
            currency=currency,
            receipt_url=f"https://fake-gateway.test/receipt/{payment_id}" if succeeded else None,
            reference_id=idempotency_key,
            location_id=self.location_id,
            card_brand="VISA",
            card_last4="1111",
            card_exp_month="12",
            card_exp_year="2030",
            created_at=utcnow(),
            failure_reason=None if succeeded else self.failure_reason,
        )
        self.charges[idempotency_key] = result

        if self.lose_response_next:
            self.lose_response_next = False
            raise GatewayTimeout("Fake gateway response lost", idempotency_key=idempotency_key)
        return result

    async def list_refunds(
        self,
        payment_id: Optional[str] = None,
        begin_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[RefundEvent]:
        self.calls.append(
            {
                "method": "list_refunds",
                "payment_id": payment_id,
                "begin_time": begin_time,
                "end_time": end_time,
            }
        )
        self._raise_if_down()

        if payment_id is not None:
            return list(self.refunds.get(payment_id, []))

        events = [event for items in self.refunds.values() for event in items]
        if begin_time is not None:
            events = [e for e in events if e.processed_at and e.processed_at >= ensure_aware(begin_time)]
        if end_time is not None:
            events = [e for e in events if e.processed_at and e.processed_at <= ensure_aware(end_time)]
        return events

    async def refund(
        self,
        payment_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
        currency: str = "USD",
    ) -> RefundEvent:
        self.calls.append(
            {
                "method": "refund",
                "payment_id": payment_id,
                "amount": amount,
                "reason": reason,
                "idempotency_key": idempotency_key,
            }
        )
        self._raise_if_down(idempotency_key)

        if idempotency_key in self._refund_keys:
            return self._refund_keys[idempotency_key]
        if not self.refund_succeeds:
            raise GatewayDeclined(f"Refund rejected: {self.failure_reason}", gateway_status="REJECTED")

        event = self.seed_refund(payment_id, amount, reason=reason, currency=currency)
        self._refund_keys[idempotency_key] = event
        return event

    async def find_charge(
        self,
        idempotency_key: str,
        begin_time: Optional[datetime] = None,
    ) -> Optional[ChargeResult]:
        self.calls.append({"method": "find_charge", "idempotency_key": idempotency_key})
        self._raise_if_down(idempotency_key)
        return self.charges.get(idempotency_key)

    # --- Test helpers ---

    def seed_refund(
        self,
        payment_id: str,
        amount: int,
        refund_id: Optional[str] = None,
        status: str = "completed",
        reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
        currency: str = "USD",
    ) -> RefundEvent:
        """Record a refund as if it had been issued at the gateway (e.g. from its dashboard)."""
        event = RefundEvent(
            id=refund_id or f"fake_ref_{uuid4().hex[:16]}",
            payment_id=payment_id,
            amount=amount,
            status=status,
            currency=currency,
            reason=reason,
            processed_at=processed_at or utcnow(),
        )
        self.refunds.setdefault(payment_id, []).append(event)
        return event

    def calls_to(self, method: str) -> List[dict]:
        return [call for call in self.calls if call["method"] == method]
