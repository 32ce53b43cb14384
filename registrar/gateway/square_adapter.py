"""
Square payments adapter.

Talks to the Square REST API (v2) over httpx. Amounts are integer minor units
on both sides, so no conversion happens here.

Environment:
    SQUARE_ACCESS_TOKEN: API access token
    SQUARE_LOCATION_ID: Location charges are taken at
    SQUARE_ENVIRONMENT: "production" or "sandbox" (default sandbox)
    SQUARE_API_VERSION: Square-Version header
    GATEWAY_TIMEOUT_SECONDS: Per-request timeout (default 15)
"""

import logging
import os
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

from registrar.gateway.port import (
    ChargeResult,
    GatewayChargeStatus,
    LedgerGateway,
    RefundEvent,
)
from registrar.services.errors import GatewayDeclined, GatewayTimeout, GatewayUnavailable
from registrar.utils.datetime_utils import format_gateway_timestamp, parse_gateway_timestamp
from registrar.utils.env_utils import get_float_env

load_dotenv()

logger = logging.getLogger(__name__)

SQUARE_PRODUCTION_URL = "https://connect.squareup.com"
SQUARE_SANDBOX_URL = "https://connect.squareupsandbox.com"
DEFAULT_API_VERSION = "2025-01-23"

# Square payment status -> normalised charge status
_CHARGE_STATUS_MAP = {
    "COMPLETED": GatewayChargeStatus.COMPLETED,
    "APPROVED": GatewayChargeStatus.PENDING,
    "PENDING": GatewayChargeStatus.PENDING,
    "CANCELED": GatewayChargeStatus.FAILED,
    "FAILED": GatewayChargeStatus.FAILED,
}

# Square refund status -> local refund status
_REFUND_STATUS_MAP = {
    "PENDING": "pending",
    "COMPLETED": "completed",
    "REJECTED": "failed",
    "FAILED": "failed",
}


def map_refund_status(square_status: Optional[str]) -> str:
    """Map a Square refund status onto the local vocabulary; unknown values stay pending."""
    return _REFUND_STATUS_MAP.get((square_status or "").upper(), "pending")


def _error_detail(body: Dict[str, Any]) -> str:
    errors = body.get("errors") or []
    if not errors:
        return "unknown error"
    return "; ".join(f"{e.get('code', 'ERROR')}: {e.get('detail', '')}".strip() for e in errors)


def _charge_from_payment(payment: Dict[str, Any]) -> ChargeResult:
    money = payment.get("amount_money") or {}
    card = (payment.get("card_details") or {}).get("card") or {}
    status = _CHARGE_STATUS_MAP.get(payment.get("status", ""), GatewayChargeStatus.FAILED)
    exp_month = card.get("exp_month")
    exp_year = card.get("exp_year")
    return ChargeResult(
        id=payment["id"],
        status=status,
        amount=int(money.get("amount", 0)),
        currency=money.get("currency", "USD"),
        receipt_url=payment.get("receipt_url"),
        reference_id=payment.get("reference_id"),
        location_id=payment.get("location_id"),
        card_brand=card.get("card_brand"),
        card_last4=card.get("last_4"),
        card_exp_month=str(exp_month) if exp_month is not None else None,
        card_exp_year=str(exp_year) if exp_year is not None else None,
        created_at=parse_gateway_timestamp(payment.get("created_at")),
    )


def _refund_from_square(refund: Dict[str, Any]) -> RefundEvent:
    money = refund.get("amount_money") or {}
    return RefundEvent(
        id=refund["id"],
        payment_id=refund.get("payment_id", ""),
        amount=int(money.get("amount", 0)),
        status=map_refund_status(refund.get("status")),
        currency=money.get("currency", "USD"),
        reason=refund.get("reason"),
        processed_at=parse_gateway_timestamp(refund.get("updated_at") or refund.get("created_at")),
    )


class SquareGateway(LedgerGateway):
    """Ledger gateway backed by the Square Payments and Refunds APIs."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        location_id: Optional[str] = None,
        environment: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token or os.getenv("SQUARE_ACCESS_TOKEN", "")
        self.location_id = location_id or os.getenv("SQUARE_LOCATION_ID")
        environment = (environment or os.getenv("SQUARE_ENVIRONMENT", "sandbox")).lower()
        self.base_url = SQUARE_PRODUCTION_URL if environment == "production" else SQUARE_SANDBOX_URL
        self.api_version = api_version or os.getenv("SQUARE_API_VERSION", DEFAULT_API_VERSION)
        self.timeout = timeout if timeout is not None else get_float_env("GATEWAY_TIMEOUT_SECONDS", 15.0)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.access_token:
            logger.warning("SQUARE_ACCESS_TOKEN not set - Square requests will be rejected")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Square-Version": self.api_version,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        idempotency_key: Optional[str] = None,
        allow_statuses: tuple = (),
        **kwargs,
    ) -> httpx.Response:
        """
        Send one request, translating transport problems into gateway errors.

        Timeouts mean the outcome is unknown (GatewayTimeout). Connection errors
        and 5xx answers mean the gateway is unavailable (GatewayUnavailable).
        Other 4xx answers are returned only when listed in ``allow_statuses``.
        """
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Square {method} {path} timed out: {e}")
            raise GatewayTimeout(f"Square request timed out: {method} {path}", idempotency_key=idempotency_key)
        except httpx.TransportError as e:
            logger.warning(f"Square {method} {path} failed: {e}")
            raise GatewayUnavailable(f"Square unreachable: {e}", idempotency_key=idempotency_key)

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Square returned {response.status_code} for {method} {path}",
                idempotency_key=idempotency_key,
            )
        if response.status_code >= 400 and response.status_code not in allow_statuses:
            detail = _error_detail(_safe_json(response))
            raise GatewayUnavailable(
                f"Square rejected {method} {path} ({response.status_code}): {detail}",
                idempotency_key=idempotency_key,
            )
        return response

    async def charge(
        self,
        idempotency_key: str,
        source_token: str,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        metadata = metadata or {}
        body: Dict[str, Any] = {
            "source_id": source_token,
            "idempotency_key": idempotency_key,
            "amount_money": {"amount": int(amount), "currency": currency},
            "autocomplete": True,
            # Lets a later find_charge() match the charge back to this attempt
            "reference_id": idempotency_key,
        }
        if self.location_id:
            body["location_id"] = self.location_id
        if metadata.get("buyer_email"):
            body["buyer_email_address"] = metadata["buyer_email"]
        if metadata.get("note"):
            body["note"] = metadata["note"][:500]

        # 400/402 carry card declines; the body may or may not include the failed payment
        response = await self._request(
            "POST", "/v2/payments", idempotency_key=idempotency_key, json=body, allow_statuses=(400, 402)
        )
        data = _safe_json(response)
        payment = data.get("payment")
        if response.status_code >= 400:
            detail = _error_detail(data)
            logger.info(f"Square declined charge {idempotency_key}: {detail}")
            if payment:
                failed = _charge_from_payment(payment)
                return replace(failed, status=GatewayChargeStatus.FAILED, failure_reason=detail)
            return ChargeResult(
                id="",
                status=GatewayChargeStatus.FAILED,
                amount=int(amount),
                currency=currency,
                reference_id=idempotency_key,
                failure_reason=detail,
            )
        if not payment:
            raise GatewayUnavailable("Square response missing payment", idempotency_key=idempotency_key)
        return _charge_from_payment(payment)

    async def list_refunds(
        self,
        payment_id: Optional[str] = None,
        begin_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[RefundEvent]:
        if payment_id is not None:
            return await self._refunds_for_payment(payment_id)
        return await self._refunds_in_window(begin_time, end_time)

    async def _refunds_for_payment(self, payment_id: str) -> List[RefundEvent]:
        """Fetch the payment, then each refund it lists."""
        response = await self._request("GET", f"/v2/payments/{payment_id}")
        payment = _safe_json(response).get("payment") or {}
        events = []
        for refund_id in payment.get("refund_ids") or []:
            refund_response = await self._request("GET", f"/v2/refunds/{refund_id}")
            refund = _safe_json(refund_response).get("refund")
            if refund:
                events.append(_refund_from_square(refund))
        return events

    async def _refunds_in_window(
        self, begin_time: Optional[datetime], end_time: Optional[datetime]
    ) -> List[RefundEvent]:
        params: Dict[str, str] = {"sort_order": "ASC"}
        if begin_time is not None:
            params["begin_time"] = format_gateway_timestamp(begin_time)
        if end_time is not None:
            params["end_time"] = format_gateway_timestamp(end_time)
        if self.location_id:
            params["location_id"] = self.location_id

        events: List[RefundEvent] = []
        cursor = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            response = await self._request("GET", "/v2/refunds", params=page_params)
            data = _safe_json(response)
            events.extend(_refund_from_square(r) for r in data.get("refunds") or [])
            cursor = data.get("cursor")
            if not cursor:
                break
        return events

    async def refund(
        self,
        payment_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
        currency: str = "USD",
    ) -> RefundEvent:
        body: Dict[str, Any] = {
            "idempotency_key": idempotency_key,
            "payment_id": payment_id,
            "amount_money": {"amount": int(amount), "currency": currency},
        }
        if reason:
            body["reason"] = reason[:192]

        response = await self._request(
            "POST", "/v2/refunds", idempotency_key=idempotency_key, json=body, allow_statuses=(400, 402)
        )
        data = _safe_json(response)
        if response.status_code >= 400:
            raise GatewayDeclined(f"Refund rejected: {_error_detail(data)}", gateway_status="REJECTED")
        refund = data.get("refund")
        if not refund:
            raise GatewayUnavailable("Square response missing refund", idempotency_key=idempotency_key)
        return _refund_from_square(refund)

    async def find_charge(
        self,
        idempotency_key: str,
        begin_time: Optional[datetime] = None,
    ) -> Optional[ChargeResult]:
        params: Dict[str, str] = {"sort_order": "ASC"}
        if begin_time is not None:
            params["begin_time"] = format_gateway_timestamp(begin_time)
        if self.location_id:
            params["location_id"] = self.location_id

        cursor = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            response = await self._request("GET", "/v2/payments", params=page_params)
            data = _safe_json(response)
            for payment in data.get("payments") or []:
                if payment.get("reference_id") == idempotency_key:
                    return _charge_from_payment(payment)
            cursor = data.get("cursor")
            if not cursor:
                return None


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
