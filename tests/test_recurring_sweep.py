from datetime import timedelta
from decimal import Decimal

import pytest

from shared.models.payment import PaymentStatus
from shared.models.user import UserStatus
from apps.bot.services.exceptions import GatewayError, TransientError
from apps.bot.services.gateway import GatewayEvent
from apps.bot.services.repository import Repository
from apps.bot.utils import texts

pytestmark = pytest.mark.sweep

LEAD = timedelta(days=1)


async def test_recurring_success_extends_and_reschedules(engine, create_autopay_user, card_gateway, load_user, load_instrument, clock, notifier):
    end = clock() + timedelta(hours=6)
    instrument_id = await create_autopay_user(2001, end, clock() - timedelta(minutes=1))

    report = await engine.process_recurring_charges()

    assert report.candidates == 1
    assert report.count("succeeded") == 1
    assert card_gateway.instrument_charges[0]["instrument_id"] == instrument_id
    assert card_gateway.instrument_charges[0]["amount"] == Decimal("10.00")
    assert card_gateway.instrument_charges[0]["metadata"]["kind"] == "recurring_charge"
    user = await load_user(2001)
    assert user.subscription_end == end + timedelta(days=30)
    assert user.auto_payment_enabled is True
    assert (await load_instrument(instrument_id)).next_charge_at == end + timedelta(days=30) - LEAD
    assert len(notifier.messages_to(2001)) == 1


async def test_not_due_instruments_are_skipped(engine, create_autopay_user, card_gateway, clock):
    await create_autopay_user(2002, clock() + timedelta(days=20), clock() + timedelta(days=19))

    report = await engine.process_recurring_charges()

    assert report.candidates == 0
    assert card_gateway.instrument_charges == []


async def test_inactive_users_are_not_charged(engine, create_autopay_user, session_factory, card_gateway, clock):
    await create_autopay_user(2003, clock() + timedelta(days=1), clock() - timedelta(minutes=1))
    async with session_factory() as session:
        repo = Repository(session)
        user = await repo.get_user(2003)
        await repo.set_subscription(user, False, user.subscription_end)
        await repo.commit()

    report = await engine.process_recurring_charges()

    assert report.candidates == 0
    assert card_gateway.instrument_charges == []


async def test_pending_charge_is_rechecked_not_recharged(engine, create_autopay_user, card_gateway, load_user, load_instrument, clock):
    """A charge still in flight is polled on the next tick instead of creating a second one"""
    end = clock() + timedelta(hours=6)
    instrument_id = await create_autopay_user(2010, end, clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [PaymentStatus.PENDING]

    report = await engine.process_recurring_charges()

    assert report.count("pending") == 1
    assert (await load_instrument(instrument_id)).next_charge_at == clock() + timedelta(minutes=2)
    assert (await load_user(2010)).subscription_end == end

    # not due yet: nothing happens before the re-check time
    assert (await engine.process_recurring_charges()).candidates == 0

    clock.advance(minutes=3)
    charge_id = "auto-1"
    card_gateway.settle(charge_id, PaymentStatus.SUCCEEDED)

    report = await engine.process_recurring_charges()

    assert report.count("succeeded") == 1
    assert len(card_gateway.instrument_charges) == 1
    assert (await load_user(2010)).subscription_end == end + timedelta(days=30)


async def test_pending_charge_confirmed_by_webhook_extends_once(engine, create_autopay_user, card_gateway, load_user, load_instrument, clock):
    end = clock() + timedelta(hours=6)
    instrument_id = await create_autopay_user(2011, end, clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [PaymentStatus.PENDING]
    await engine.process_recurring_charges()

    changed = await engine.reconcile(GatewayEvent(
        gateway="yookassa",
        event_type="payment.succeeded",
        charge_id="auto-1",
        status=PaymentStatus.SUCCEEDED
    ))
    assert changed is True
    assert (await load_instrument(instrument_id)).next_charge_at == end + timedelta(days=30) - LEAD

    # the re-check path later sees the settled payment and does not extend again
    clock.advance(minutes=3)
    card_gateway.settle("auto-1", PaymentStatus.SUCCEEDED)
    await engine.process_recurring_charges()

    assert (await load_user(2011)).subscription_end == end + timedelta(days=30)


async def test_fatal_failure_disables_autopay_and_notifies_once(engine, create_autopay_user, card_gateway, load_user, load_instrument, notifier, clock, load_audit):
    end = clock() + timedelta(hours=6)
    instrument_id = await create_autopay_user(2020, end, clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [GatewayError("Card expired", http_status=400, code="card_expired")]

    report = await engine.process_recurring_charges()

    assert report.count("disabled") == 1
    user = await load_user(2020)
    assert user.auto_payment_enabled is False
    assert user.status == UserStatus.ACTIVE.value
    assert user.subscription_end == end
    instrument = await load_instrument(instrument_id)
    assert instrument.is_active is False
    assert instrument.deactivation_reason.startswith("fatal")
    assert notifier.messages_to(2020) == [texts.AUTO_PAYMENT_DISABLED.format(reason="Card expired")]
    assert (await load_audit(2020)).count("auto_payment_disabled") == 1

    # never retried
    clock.advance(days=40)
    report = await engine.process_recurring_charges()
    assert report.candidates == 0
    assert len(card_gateway.instrument_charges) == 1
    assert len(notifier.messages_to(2020)) == 1


async def test_cancelled_recurring_charge_with_fatal_reason(engine, create_autopay_user, card_gateway, load_user, notifier, clock):
    await create_autopay_user(2021, clock() + timedelta(hours=6), clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [(PaymentStatus.CANCELLED, "insufficient_funds")]

    report = await engine.process_recurring_charges()

    assert report.count("disabled") == 1
    assert (await load_user(2021)).auto_payment_enabled is False
    assert len(notifier.messages_to(2021)) == 1


async def test_transient_failure_keeps_autopay(engine, create_autopay_user, card_gateway, load_user, load_instrument, notifier, clock, load_audit):
    end = clock() + timedelta(hours=6)
    instrument_id = await create_autopay_user(2030, end, clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [TransientError("Read timeout")]

    report = await engine.process_recurring_charges()

    assert report.count("transient") == 1
    user = await load_user(2030)
    assert user.auto_payment_enabled is True
    instrument = await load_instrument(instrument_id)
    assert instrument.is_active is True
    # one more attempt when the paid period ends
    assert instrument.next_charge_at == end
    assert notifier.messages_to(2030) == []
    assert "auto_payment_failed" in await load_audit(2030)


async def test_transient_failure_after_period_end_waits_full_interval(engine, create_autopay_user, card_gateway, load_user, load_instrument, clock):
    instrument_id = await create_autopay_user(2033, clock() - timedelta(minutes=5), clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [TransientError("Read timeout")]

    assert (await engine.process_recurring_charges()).count("transient") == 1
    assert (await load_instrument(instrument_id)).next_charge_at == clock() + timedelta(days=30)

    # no charge left in flight, so the lapsed subscription expires
    report = await engine.process_expired_subscriptions()

    assert report.count("expired") == 1
    assert (await load_user(2033)).status == UserStatus.INACTIVE.value


async def test_server_error_and_unrecognised_cancellation_are_transient(engine, create_autopay_user, card_gateway, load_user, clock):
    await create_autopay_user(2031, clock() + timedelta(hours=6), clock() - timedelta(minutes=1))
    await create_autopay_user(2032, clock() + timedelta(hours=6), clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [
        GatewayError("Internal server error", http_status=500),
        (PaymentStatus.CANCELLED, None),
    ]

    report = await engine.process_recurring_charges()

    assert report.count("transient") == 2
    assert (await load_user(2031)).auto_payment_enabled is True
    assert (await load_user(2032)).auto_payment_enabled is True


async def test_one_failure_does_not_abort_sweep(engine, create_autopay_user, card_gateway, load_user, clock):
    """An unexpected error for one user is logged and the next user is still charged"""
    end = clock() + timedelta(hours=6)
    await create_autopay_user(2040, end, clock() - timedelta(minutes=1))
    await create_autopay_user(2041, end, clock() - timedelta(minutes=1))
    card_gateway.instrument_results = [RuntimeError("unexpected"), PaymentStatus.SUCCEEDED]

    report = await engine.process_recurring_charges()

    assert report.candidates == 2
    assert report.errors == 1
    assert report.count("succeeded") == 1
    assert (await load_user(2040)).subscription_end == end
    assert (await load_user(2041)).subscription_end == end + timedelta(days=30)
