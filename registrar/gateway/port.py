"""Ledger gateway port (abstract interface).

The payment gateway is the sole authority on whether money moved. Services
talk to it only through this contract, so the Square adapter (production) and
the fake adapter (development/tests) are interchangeable.

Adapters raise ``GatewayTimeout`` / ``GatewayUnavailable`` from
``registrar.services.errors`` when the outcome of a call is unknown. A declined
charge is *not* an exception at this layer: it comes back as a ChargeResult
whose status is not COMPLETED.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional


class GatewayChargeStatus:
    """Charge statuses as normalised by the adapters."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ChargeResult:
    """A charge as the gateway reports it."""

    id: str
    status: str
    amount: int  # minor units
    currency: str
    receipt_url: Optional[str] = None
    reference_id: Optional[str] = None
    location_id: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[str] = None
    card_exp_year: Optional[str] = None
    created_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == GatewayChargeStatus.COMPLETED


@dataclass(frozen=True)
class RefundEvent:
    """
    One refund as the gateway reports it.

    ``status`` uses the local vocabulary (pending, completed, failed).
    """

    id: str
    payment_id: str
    amount: int  # minor units
    status: str
    currency: str = "USD"
    reason: Optional[str] = None
    processed_at: Optional[datetime] = None


class LedgerGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    async def charge(
        self,
        idempotency_key: str,
        source_token: str,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """Charge a card. Retrying with the same idempotency key never charges twice."""
        ...

    @abstractmethod
    async def list_refunds(
        self,
        payment_id: Optional[str] = None,
        begin_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[RefundEvent]:
        """List refunds for one payment, or every refund in a time window."""
        ...

    @abstractmethod
    async def refund(
        self,
        payment_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
        currency: str = "USD",
    ) -> RefundEvent:
        """Refund part or all of a previous charge."""
        ...

    @abstractmethod
    async def find_charge(
        self,
        idempotency_key: str,
        begin_time: Optional[datetime] = None,
    ) -> Optional[ChargeResult]:
        """Look up the charge made with ``idempotency_key``, or None if the gateway never saw it."""
        ...

    async def close(self) -> None:
        """Release any network resources held by the adapter."""
        return None
