"""
Tests for the ledger gateway adapters.

The Square adapter is exercised against httpx.MockTransport, so no request
leaves the process.
"""

import json
from datetime import datetime, timedelta

import httpx
import pytest
import pytz

from registrar.gateway import get_gateway, reset_gateway, set_gateway
from registrar.gateway.fake_adapter import FakeGateway
from registrar.gateway.port import GatewayChargeStatus
from registrar.gateway.square_adapter import SquareGateway, map_refund_status
from registrar.services.errors import GatewayDeclined, GatewayTimeout, GatewayUnavailable
from registrar.utils.datetime_utils import format_gateway_timestamp, parse_gateway_timestamp, utcnow

SQUARE_PAYMENT = {
    "id": "sq_pay_1",
    "status": "COMPLETED",
    "amount_money": {"amount": 105000, "currency": "USD"},
    "receipt_url": "https://squareup.com/receipt/preview/sq_pay_1",
    "reference_id": "key-1",
    "location_id": "LOC1",
    "created_at": "2025-10-13T16:33:00.123Z",
    "card_details": {"card": {"card_brand": "VISA", "last_4": "1111", "exp_month": 12, "exp_year": 2030}},
    "refund_ids": ["sq_ref_1"],
}

SQUARE_REFUND = {
    "id": "sq_ref_1",
    "payment_id": "sq_pay_1",
    "status": "COMPLETED",
    "amount_money": {"amount": 105000, "currency": "USD"},
    "reason": "Requested by guardian",
    "created_at": "2025-10-14T09:00:00Z",
    "updated_at": "2025-10-14T09:00:05Z",
}


def _square(handler):
    return SquareGateway(
        access_token="test-token",
        location_id="LOC1",
        environment="sandbox",
        transport=httpx.MockTransport(handler),
    )


class TestFakeGateway:
    @pytest.mark.asyncio
    async def test_charge_is_idempotent(self):
        gateway = FakeGateway()
        first = await gateway.charge("key-1", "cnon:ok", 105000, "USD")
        second = await gateway.charge("key-1", "cnon:ok", 105000, "USD")

        assert first.succeeded
        assert first.id == second.id
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_lost_response_still_records_charge(self):
        gateway = FakeGateway()
        gateway.lose_response_next = True

        with pytest.raises(GatewayTimeout):
            await gateway.charge("key-1", "cnon:ok", 100, "USD")

        found = await gateway.find_charge("key-1")
        assert found is not None and found.succeeded
        # One-shot: the next call answers normally
        assert (await gateway.charge("key-2", "cnon:ok", 100, "USD")).succeeded

    @pytest.mark.asyncio
    async def test_configured_decline(self):
        gateway = FakeGateway()
        gateway.configure(charge_status=GatewayChargeStatus.FAILED, failure_reason="INSUFFICIENT_FUNDS")

        result = await gateway.charge("key-1", "cnon:ok", 100, "USD")

        assert not result.succeeded
        assert result.failure_reason == "INSUFFICIENT_FUNDS"
        assert result.receipt_url is None

    @pytest.mark.asyncio
    async def test_refunds_by_payment_and_window(self):
        gateway = FakeGateway()
        now = utcnow()
        gateway.seed_refund("pay_a", 100, refund_id="r1", processed_at=now - timedelta(days=40))
        gateway.seed_refund("pay_a", 200, refund_id="r2", processed_at=now - timedelta(days=1))
        gateway.seed_refund("pay_b", 300, refund_id="r3", processed_at=now)

        by_payment = await gateway.list_refunds(payment_id="pay_a")
        in_window = await gateway.list_refunds(begin_time=now - timedelta(days=30), end_time=now)

        assert [r.id for r in by_payment] == ["r1", "r2"]
        assert sorted(r.id for r in in_window) == ["r2", "r3"]

    @pytest.mark.asyncio
    async def test_refund_with_same_key_is_issued_once(self):
        gateway = FakeGateway()
        first = await gateway.refund("pay_a", 500, "Injury", "refund-key")
        second = await gateway.refund("pay_a", 500, "Injury", "refund-key")

        assert first.id == second.id
        assert len(gateway.refunds["pay_a"]) == 1

    @pytest.mark.asyncio
    async def test_rejected_refund(self):
        gateway = FakeGateway()
        gateway.refund_succeeds = False
        with pytest.raises(GatewayDeclined):
            await gateway.refund("pay_a", 500, None, "refund-key")
        assert gateway.refunds == {}

    def test_factory_defaults_to_fake(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_GATEWAY", raising=False)
        reset_gateway()
        try:
            assert isinstance(get_gateway(), FakeGateway)
            custom = FakeGateway()
            set_gateway(custom)
            assert get_gateway() is custom
        finally:
            reset_gateway()


class TestSquareGateway:
    @pytest.mark.asyncio
    async def test_charge_sends_idempotency_key_and_reference(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"payment": SQUARE_PAYMENT})

        gateway = _square(handler)
        result = await gateway.charge(
            "key-1", "cnon:ok", 105000, "USD", {"buyer_email": "parent@example.com", "note": "Fall"}
        )
        await gateway.close()

        assert captured["path"] == "/v2/payments"
        assert captured["headers"]["Authorization"] == "Bearer test-token"
        body = captured["body"]
        assert body["idempotency_key"] == "key-1"
        assert body["reference_id"] == "key-1"
        assert body["amount_money"] == {"amount": 105000, "currency": "USD"}
        assert body["location_id"] == "LOC1"
        assert body["buyer_email_address"] == "parent@example.com"

        assert result.succeeded
        assert result.id == "sq_pay_1"
        assert result.card_brand == "VISA"
        assert result.card_exp_month == "12"
        assert result.created_at == datetime(2025, 10, 13, 16, 33, 0, 123000, tzinfo=pytz.UTC)

    @pytest.mark.asyncio
    async def test_card_decline_is_a_failed_result(self):
        def handler(request):
            return httpx.Response(
                402,
                json={"errors": [{"code": "CARD_DECLINED", "detail": "Card declined."}]},
            )

        gateway = _square(handler)
        result = await gateway.charge("key-1", "cnon:bad", 100, "USD")

        assert result.status == GatewayChargeStatus.FAILED
        assert "CARD_DECLINED" in result.failure_reason

    @pytest.mark.asyncio
    async def test_timeout_and_server_errors(self):
        def timeout_handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(GatewayTimeout) as exc_info:
            await _square(timeout_handler).charge("key-1", "cnon:ok", 100, "USD")
        assert exc_info.value.idempotency_key == "key-1"

        def server_error(request):
            return httpx.Response(503, json={})

        with pytest.raises(GatewayUnavailable):
            await _square(server_error).charge("key-1", "cnon:ok", 100, "USD")

        def connect_error(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayUnavailable):
            await _square(connect_error).list_refunds(payment_id="sq_pay_1")

    @pytest.mark.asyncio
    async def test_refunds_for_payment(self):
        def handler(request):
            if request.url.path == "/v2/payments/sq_pay_1":
                return httpx.Response(200, json={"payment": SQUARE_PAYMENT})
            if request.url.path == "/v2/refunds/sq_ref_1":
                return httpx.Response(200, json={"refund": SQUARE_REFUND})
            return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

        events = await _square(handler).list_refunds(payment_id="sq_pay_1")

        assert len(events) == 1
        event = events[0]
        assert event.id == "sq_ref_1"
        assert event.payment_id == "sq_pay_1"
        assert event.amount == 105000
        assert event.status == "completed"
        assert event.processed_at == datetime(2025, 10, 14, 9, 0, 5, tzinfo=pytz.UTC)

    @pytest.mark.asyncio
    async def test_refunds_in_window_follow_cursor(self):
        seen_params = []

        def handler(request):
            params = dict(request.url.params)
            seen_params.append(params)
            if "cursor" not in params:
                return httpx.Response(200, json={"refunds": [SQUARE_REFUND], "cursor": "page-2"})
            second = dict(SQUARE_REFUND, id="sq_ref_2", status="PENDING")
            return httpx.Response(200, json={"refunds": [second]})

        begin = datetime(2025, 10, 1, tzinfo=pytz.UTC)
        end = datetime(2025, 10, 31, tzinfo=pytz.UTC)
        events = await _square(handler).list_refunds(begin_time=begin, end_time=end)

        assert [e.id for e in events] == ["sq_ref_1", "sq_ref_2"]
        assert events[1].status == "pending"
        assert seen_params[0]["begin_time"] == "2025-10-01T00:00:00.000Z"
        assert seen_params[0]["end_time"] == "2025-10-31T00:00:00.000Z"
        assert seen_params[1]["cursor"] == "page-2"

    @pytest.mark.asyncio
    async def test_find_charge_matches_reference_id(self):
        def handler(request):
            other = dict(SQUARE_PAYMENT, id="sq_pay_0", reference_id="someone-else")
            return httpx.Response(200, json={"payments": [other, SQUARE_PAYMENT]})

        gateway = _square(handler)
        found = await gateway.find_charge("key-1", begin_time=utcnow())
        missing = await gateway.find_charge("key-404")

        assert found.id == "sq_pay_1"
        assert missing is None

    @pytest.mark.asyncio
    async def test_rejected_refund(self):
        def handler(request):
            return httpx.Response(400, json={"errors": [{"code": "REFUND_AMOUNT_INVALID", "detail": "Too much"}]})

        with pytest.raises(GatewayDeclined) as exc_info:
            await _square(handler).refund("sq_pay_1", 999999, None, "refund-key")
        assert "REFUND_AMOUNT_INVALID" in exc_info.value.message


def test_refund_status_mapping():
    assert map_refund_status("COMPLETED") == "completed"
    assert map_refund_status("REJECTED") == "failed"
    assert map_refund_status("FAILED") == "failed"
    assert map_refund_status("PENDING") == "pending"
    assert map_refund_status("SOMETHING_NEW") == "pending"
    assert map_refund_status(None) == "pending"


def test_gateway_timestamps():
    parsed = parse_gateway_timestamp("2025-10-13T16:33:00.123Z")
    assert parsed == datetime(2025, 10, 13, 16, 33, 0, 123000, tzinfo=pytz.UTC)
    assert format_gateway_timestamp(parsed) == "2025-10-13T16:33:00.123Z"
    assert parse_gateway_timestamp("not a date") is None
    assert parse_gateway_timestamp(None) is None
