"""
Tests for the refund reconciliation engine.

Refund events are merged as a set keyed by the gateway refund id, so
reconciling the same gateway state any number of times converges on one
ledger. Conflicting reports are kept out of the totals and flagged.
"""

import dataclasses
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from registrar.database.models import Guardian, Payment, Refund, Registration, SeasonRegistration
from registrar.gateway.port import RefundEvent
from registrar.services import email_service, payment_service, refund_service, registration_service
from registrar.services.errors import GatewayDeclined, InvalidRequest, NotFound
from registrar.tests.factories import create_payment
from registrar.utils.datetime_utils import utcnow

YEAR = utcnow().year


async def _paid_payment(session, family):
    """Charge for both of the family's players; returns (payment id, gateway payment id, registration ids)."""
    registration_ids = []
    for player_id in family.player_ids:
        _, registration = await registration_service.register_player_for_season(
            session, player_id, "Fall", YEAR, family.guardian_id
        )
        registration_ids.append(registration.id)
    result = await payment_service.charge(
        session,
        guardian_id=family.guardian_id,
        source_token="cnon:card-nonce-ok",
        amount=105000,
        registration_ids=registration_ids,
        buyer_email="parent@example.com",
    )
    ids = (result.payment.id, result.payment.gateway_payment_id, registration_ids)
    session.expunge_all()
    return ids


async def _imported_payment(session, family, gateway_payment_id="sq_pay_1", amount=105000):
    """A completed payment with no registrations; returns its id."""
    guardian = await session.get(Guardian, family.guardian_id)
    payment = await create_payment(session, guardian, gateway_payment_id=gateway_payment_id, amount=amount)
    await session.commit()
    payment_id = payment.id
    session.expunge_all()
    return payment_id


def _event(refund_id, amount, status="completed", payment_id="sq_pay_1"):
    return RefundEvent(id=refund_id, payment_id=payment_id, amount=amount, status=status, processed_at=utcnow())


async def _refund_count(session):
    result = await session.execute(select(func.count()).select_from(Refund))
    return result.scalar()


async def _registration_statuses(session, registration_ids):
    result = await session.execute(
        select(Registration.payment_status).where(Registration.id.in_(registration_ids))
    )
    return set(result.scalars().all())


class TestMergeRefundEvents:
    def _payment(self, amount=105000):
        return SimpleNamespace(
            gateway_payment_id="sq_pay_1",
            amount=amount,
            status="completed",
            refunded_amount=0,
            refund_status="none",
            refunds=[],
            status_history=[],
            needs_review=False,
            review_note=None,
        )

    def test_same_event_twice_is_applied_once(self):
        payment = self._payment()
        event = _event("r1", 5000)

        first = refund_service.merge_refund_events(payment, [event, event])
        second = refund_service.merge_refund_events(payment, [event])

        assert first.added == ["r1"]
        assert first.unchanged == 1
        assert second.changed is False
        assert len(payment.refunds) == 1
        assert payment.refunded_amount == 5000
        assert payment.refund_status == "partial"

    def test_events_for_other_payments_are_ignored(self):
        payment = self._payment()
        outcome = refund_service.merge_refund_events(payment, [_event("r1", 5000, payment_id="sq_other")])
        assert outcome.added == []
        assert payment.refunds == []

    def test_full_refund_records_status_change(self):
        payment = self._payment()
        refund_service.merge_refund_events(payment, [_event("r1", 100000), _event("r2", 5000)])

        assert payment.status == "refunded"
        assert payment.refund_status == "full"
        assert len(payment.status_history) == 1
        assert payment.status_history[0].status == "refunded"

    def test_unknown_event_status_is_treated_as_pending(self):
        payment = self._payment()
        refund_service.merge_refund_events(payment, [_event("r1", 5000, status="SOMETHING_NEW")])
        assert payment.refunds[0].status == "pending"

    def test_zero_amount_is_skipped(self):
        payment = self._payment()
        outcome = refund_service.merge_refund_events(payment, [_event("r1", 0)])
        assert outcome.added == []


class TestReconcilePayment:
    @pytest.mark.asyncio
    async def test_refund_issued_at_gateway_is_picked_up(self, db_session, family, fake_gateway, notifier):
        payment_id, gateway_payment_id, registration_ids = await _paid_payment(db_session, family)
        fake_gateway.seed_refund(gateway_payment_id, 105000, refund_id="sq_ref_1", reason="Dashboard refund")

        result = await refund_service.reconcile_payment(db_session, gateway_payment_id)

        assert result.payment_id == payment_id
        assert result.refunds_added == ["sq_ref_1"]
        assert result.refunded_amount == 105000
        assert result.refund_status == "full"
        assert result.status == "refunded"
        assert result.needs_review is False

        rows = await db_session.execute(
            select(Registration.payment_status).where(Registration.id.in_(registration_ids))
        )
        assert set(rows.scalars().all()) == {"refunded"}
        entries = (await db_session.execute(select(SeasonRegistration))).scalars().all()
        assert all(e.payment_status == "refunded" and e.payment_complete is False for e in entries)
        guardian = await db_session.get(Guardian, family.guardian_id)
        assert guardian.payment_complete is False

        refund = (await db_session.execute(select(Refund))).scalar_one()
        assert refund.source == "gateway_sync"
        assert refund.reason == "Dashboard refund"

    @pytest.mark.asyncio
    async def test_reconciling_again_changes_nothing(self, db_session, family, fake_gateway, notifier):
        _, gateway_payment_id, _ = await _paid_payment(db_session, family)
        fake_gateway.seed_refund(gateway_payment_id, 105000, refund_id="sq_ref_1")

        await refund_service.reconcile_payment(db_session, gateway_payment_id)
        again = await refund_service.reconcile_payment(db_session, gateway_payment_id)

        assert again.refunds_added == []
        assert again.refunds_updated == []
        assert again.refunded_amount == 105000
        assert await _refund_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_partial_refund_keeps_registrations_paid(self, db_session, family, fake_gateway, notifier):
        _, gateway_payment_id, registration_ids = await _paid_payment(db_session, family)
        fake_gateway.seed_refund(gateway_payment_id, 5000, refund_id="sq_ref_1")

        result = await refund_service.reconcile_payment(db_session, gateway_payment_id)

        assert result.refund_status == "partial"
        assert result.status == "completed"
        rows = await db_session.execute(
            select(Registration.payment_status).where(Registration.id.in_(registration_ids))
        )
        assert set(rows.scalars().all()) == {"paid"}

    @pytest.mark.asyncio
    async def test_unknown_payment(self, db_session, family, fake_gateway):
        with pytest.raises(NotFound):
            await refund_service.reconcile_payment(db_session, "sq_missing")


class TestApplyRefundEvents:
    @pytest.mark.asyncio
    async def test_changed_amount_is_a_conflict(self, db_session, family):
        await _imported_payment(db_session, family)
        await refund_service.apply_refund_events(db_session, "sq_pay_1", [_event("r1", 5000)])

        result = await refund_service.apply_refund_events(db_session, "sq_pay_1", [_event("r1", 7000)])

        assert result.refunded_amount == 5000
        assert result.needs_review is True
        assert result.conflicts == [
            {
                "gateway_refund_id": "r1",
                "kept_amount": 5000,
                "incoming_amount": 7000,
                "detail": result.conflicts[0]["detail"],
            }
        ]
        assert await _refund_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_refunds_past_the_charged_amount_are_not_applied(self, db_session, family):
        await _imported_payment(db_session, family)

        result = await refund_service.apply_refund_events(
            db_session, "sq_pay_1", [_event("r1", 100000), _event("r2", 10000)]
        )

        assert result.refunds_added == ["r1"]
        assert result.refunded_amount == 100000
        assert result.refund_status == "partial"
        assert result.needs_review is True
        assert result.conflicts[0]["gateway_refund_id"] == "r2"

    @pytest.mark.asyncio
    async def test_pending_refund_advances_to_completed(self, db_session, family):
        await _imported_payment(db_session, family)
        await refund_service.apply_refund_events(db_session, "sq_pay_1", [_event("r1", 105000, status="pending")])

        result = await refund_service.apply_refund_events(db_session, "sq_pay_1", [_event("r1", 105000)])

        assert result.refunds_updated == ["r1"]
        assert result.status == "refunded"
        refund = (await db_session.execute(select(Refund))).scalar_one()
        assert refund.status == "completed"

    @pytest.mark.asyncio
    async def test_pending_full_refund_keeps_registrations_paid(self, db_session, family, fake_gateway, notifier):
        _, gateway_payment_id, registration_ids = await _paid_payment(db_session, family)
        pending = _event("r1", 105000, status="pending", payment_id=gateway_payment_id)

        result = await refund_service.apply_refund_events(db_session, gateway_payment_id, [pending])

        assert result.status == "refunded"
        assert result.refund_status == "full"
        assert await _registration_statuses(db_session, registration_ids) == {"paid"}

        completed = _event("r1", 105000, payment_id=gateway_payment_id)
        settled = await refund_service.apply_refund_events(db_session, gateway_payment_id, [completed])

        assert settled.refunds_updated == ["r1"]
        assert await _registration_statuses(db_session, registration_ids) == {"refunded"}
        guardian_complete = await db_session.execute(
            select(Guardian.payment_complete).where(Guardian.id == family.guardian_id)
        )
        assert guardian_complete.scalar() is False

    @pytest.mark.asyncio
    async def test_failed_refund_moves_payment_back(self, db_session, family, fake_gateway, notifier):
        _, gateway_payment_id, registration_ids = await _paid_payment(db_session, family)
        pending = _event("r1", 105000, status="pending", payment_id=gateway_payment_id)
        await refund_service.apply_refund_events(db_session, gateway_payment_id, [pending])

        failed = _event("r1", 105000, status="failed", payment_id=gateway_payment_id)
        result = await refund_service.apply_refund_events(db_session, gateway_payment_id, [failed])

        assert result.status == "completed"
        assert result.refund_status == "none"
        assert result.refunded_amount == 0
        # Nothing was refunded, so nothing needs a person to look at it
        assert result.needs_review is False
        assert await _registration_statuses(db_session, registration_ids) == {"paid"}

    @pytest.mark.asyncio
    async def test_failed_entry_does_not_count_toward_refunded_total(self, db_session, family, fake_gateway):
        await _imported_payment(db_session, family)
        await refund_service.apply_refund_events(
            db_session, "sq_pay_1", [_event("r1", 105000, status="failed"), _event("r2", 105000)]
        )

        payment = (
            await db_session.execute(select(Payment).options(selectinload(Payment.refunds)))
        ).scalar_one()
        assert payment.refunded_amount == 105000
        assert payment.refund_status == "full"
        assert [(r.gateway_refund_id, r.counted) for r in payment.refunds] == [("r1", False), ("r2", True)]
        assert sum(r.amount for r in payment.refunds if r.counted) <= payment.amount


class TestSweeps:
    @pytest.mark.asyncio
    async def test_reconcile_all_continues_past_failures(self, db_session, family, fake_gateway):
        await _imported_payment(db_session, family, "sq_pay_1")
        await _imported_payment(db_session, family, "sq_pay_2")
        fake_gateway.seed_refund("sq_pay_2", 2500, refund_id="r2")
        # The first gateway call fails
        fake_gateway.unavailable_next = True

        summary = await refund_service.reconcile_all(db_session, delay_seconds=0)

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.succeeded == 1
        assert summary.refunds_added == 1
        assert summary.errors[0].startswith("sq_pay_1:")

        # The next sweep picks up the payment that failed
        retry = await refund_service.reconcile_all(db_session, delay_seconds=0)
        assert retry.failed == 0
        assert retry.processed == 2

    @pytest.mark.asyncio
    async def test_sweep_revisits_pending_refunds_until_they_settle(
        self, db_session, family, fake_gateway, notifier
    ):
        _, gateway_payment_id, registration_ids = await _paid_payment(db_session, family)
        pending = fake_gateway.seed_refund(gateway_payment_id, 105000, refund_id="sq_ref_1", status="pending")
        first = await refund_service.reconcile_all(db_session, delay_seconds=0)
        assert first.refunds_added == 1

        # The gateway rejects the refund after the payment already reads fully refunded
        fake_gateway.refunds[gateway_payment_id] = [dataclasses.replace(pending, status="failed")]
        second = await refund_service.reconcile_all(db_session, delay_seconds=0)

        assert second.processed == 1
        assert second.succeeded == 1
        row = (
            await db_session.execute(
                select(Payment.status, Payment.refund_status, Payment.refunded_amount).where(
                    Payment.gateway_payment_id == gateway_payment_id
                )
            )
        ).one()
        assert tuple(row) == ("completed", "none", 0)
        assert await _registration_statuses(db_session, registration_ids) == {"paid"}

        # Nothing pending any more and nothing refunded: still swept as an open payment
        third = await refund_service.reconcile_all(db_session, delay_seconds=0)
        assert third.processed == 1
        assert third.refunds_added == 0

    @pytest.mark.asyncio
    async def test_fully_refunded_payments_are_skipped(self, db_session, family, fake_gateway):
        await _imported_payment(db_session, family, "sq_pay_1")
        await refund_service.apply_refund_events(db_session, "sq_pay_1", [_event("r1", 105000)])

        summary = await refund_service.reconcile_all(db_session, delay_seconds=0)

        assert summary.processed == 0
        assert fake_gateway.calls_to("list_refunds") == []

    @pytest.mark.asyncio
    async def test_date_range_reports_unknown_payments(self, db_session, family, fake_gateway):
        await _imported_payment(db_session, family, "sq_pay_1")
        fake_gateway.seed_refund("sq_pay_1", 5000, refund_id="r1")
        fake_gateway.seed_refund("sq_elsewhere", 1000, refund_id="r9")
        fake_gateway.seed_refund("sq_pay_1", 7000, refund_id="r_old", processed_at=utcnow() - timedelta(days=90))

        summary = await refund_service.reconcile_by_date_range(db_session)

        assert summary.processed == 1
        assert summary.succeeded == 1
        assert summary.refunds_added == 1
        assert summary.unknown_payments == ["sq_elsewhere"]
        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.refunded_amount == 5000

    @pytest.mark.asyncio
    async def test_date_range_must_be_ordered(self, db_session, fake_gateway):
        now = utcnow()
        with pytest.raises(InvalidRequest):
            await refund_service.reconcile_by_date_range(db_session, begin=now, end=now - timedelta(days=1))


class TestRequestRefund:
    @pytest.mark.asyncio
    async def test_direct_refund_is_recorded_and_announced(self, db_session, family, fake_gateway, notifier):
        payment_id, gateway_payment_id, _ = await _paid_payment(db_session, family)
        await notifier.dispatcher.drain()

        result = await refund_service.request_refund(db_session, payment_id, 5000, reason="Injury")

        assert len(result.refunds_added) == 1
        assert result.refunded_amount == 5000
        assert result.refund_status == "partial"
        refund = (await db_session.execute(select(Refund))).scalar_one()
        assert refund.source == "direct"
        assert refund.reason == "Injury"

        await notifier.dispatcher.drain()
        template_key, recipient, context = notifier.sent[-1]
        assert template_key == email_service.REFUND_PROCESSED
        assert recipient == "parent@example.com"
        assert context["refund_amount"] == 5000

        # The sync finds the same refund at the gateway and leaves it alone
        synced = await refund_service.reconcile_payment(db_session, gateway_payment_id)
        assert synced.refunds_added == []
        assert await _refund_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_refund_limits(self, db_session, family, fake_gateway, notifier):
        payment_id, _, _ = await _paid_payment(db_session, family)

        with pytest.raises(InvalidRequest):
            await refund_service.request_refund(db_session, payment_id, 105001)
        with pytest.raises(InvalidRequest):
            await refund_service.request_refund(db_session, payment_id, 0)
        with pytest.raises(NotFound):
            await refund_service.request_refund(db_session, 9999, 100)
        assert fake_gateway.calls_to("refund") == []

        await refund_service.request_refund(db_session, payment_id, 105000)
        with pytest.raises(InvalidRequest):
            await refund_service.request_refund(db_session, payment_id, 1)

    @pytest.mark.asyncio
    async def test_declined_refund_records_nothing(self, db_session, family, fake_gateway, notifier):
        payment_id, _, _ = await _paid_payment(db_session, family)
        await notifier.dispatcher.drain()
        sent_before = len(notifier.sent)
        fake_gateway.refund_succeeds = False

        with pytest.raises(GatewayDeclined):
            await refund_service.request_refund(db_session, payment_id, 5000)

        assert await _refund_count(db_session) == 0
        await notifier.dispatcher.drain()
        assert len(notifier.sent) == sent_before

    @pytest.mark.asyncio
    async def test_eligibility(self, db_session, family, fake_gateway, notifier):
        payment_id, gateway_payment_id, _ = await _paid_payment(db_session, family)
        fake_gateway.seed_refund(gateway_payment_id, 5000, refund_id="r1")
        await refund_service.reconcile_payment(db_session, gateway_payment_id)

        eligibility = await refund_service.get_refund_eligibility(db_session, payment_id)

        assert eligibility.eligible is True
        assert eligibility.refunded_amount == 5000
        assert eligibility.available_amount == 100000
        assert eligibility.currency == "USD"
