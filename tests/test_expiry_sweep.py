from datetime import timedelta

import pytest

from shared.models.payment import PaymentStatus
from shared.models.user import UserStatus
from apps.bot.services.gateway import GatewayEvent
from apps.bot.utils import texts

pytestmark = pytest.mark.sweep


async def test_expired_user_is_deactivated_and_evicted(engine, create_user, load_user, notifier, clock, load_audit):
    end = clock() - timedelta(minutes=5)
    await create_user(3001, status=UserStatus.ACTIVE, subscription_end=end)
    notifier.member_statuses[3001] = "member"

    report = await engine.process_expired_subscriptions()

    assert report.count("expired") == 1
    user = await load_user(3001)
    assert user.status == UserStatus.INACTIVE.value
    assert user.subscription_end == end
    assert user.auto_payment_enabled is False
    assert notifier.messages_to(3001) == [texts.SUBSCRIPTION_EXPIRED]
    assert notifier.removed == [(engine.gatekeeper.channel_id, 3001)]
    audit = await load_audit(3001)
    assert "subscription_expired" in audit
    assert "channel_evicted" in audit


async def test_expiry_clears_autopay(engine, create_autopay_user, load_user, clock):
    await create_autopay_user(3002, clock() - timedelta(minutes=5), clock() + timedelta(days=1))

    await engine.process_expired_subscriptions()

    user = await load_user(3002)
    assert user.status == UserStatus.INACTIVE.value
    assert user.auto_payment_enabled is False


async def test_active_and_unlimited_users_are_untouched(engine, create_user, load_user, notifier, clock):
    await create_user(3010, status=UserStatus.ACTIVE, subscription_end=clock() + timedelta(days=1))
    await create_user(3011, status=UserStatus.ACTIVE, subscription_end=None)

    report = await engine.process_expired_subscriptions()

    assert report.candidates == 0
    assert (await load_user(3010)).status == UserStatus.ACTIVE.value
    assert (await load_user(3011)).status == UserStatus.ACTIVE.value
    assert notifier.messages == []


async def test_second_sweep_does_nothing(engine, create_user, notifier, clock):
    await create_user(3020, status=UserStatus.ACTIVE, subscription_end=clock() - timedelta(days=1))

    await engine.process_expired_subscriptions()
    report = await engine.process_expired_subscriptions()

    assert report.candidates == 0
    assert len(notifier.messages_to(3020)) == 1


async def test_admin_member_is_not_evicted(engine, create_user, load_user, notifier, clock):
    await create_user(3030, status=UserStatus.ACTIVE, subscription_end=clock() - timedelta(days=1))
    notifier.member_statuses[3030] = "administrator"

    report = await engine.process_expired_subscriptions()

    assert report.count("expired") == 1
    assert notifier.removed == []
    assert (await load_user(3030)).status == UserStatus.INACTIVE.value


async def test_eviction_failure_is_isolated(engine, create_user, load_user, notifier, clock):
    """A Telegram failure while evicting one user does not stop the sweep"""
    await create_user(3040, status=UserStatus.ACTIVE, subscription_end=clock() - timedelta(days=1))
    await create_user(3041, status=UserStatus.ACTIVE, subscription_end=clock() - timedelta(days=1))
    notifier.member_statuses[3040] = "member"
    notifier.member_statuses[3041] = "member"

    original_remove = notifier.remove_member

    async def flaky_remove(chat_id, telegram_id):
        if telegram_id == 3040:
            raise RuntimeError("Bad Request: not enough rights")
        await original_remove(chat_id, telegram_id)

    notifier.remove_member = flaky_remove

    report = await engine.process_expired_subscriptions()

    assert report.errors == 1
    assert report.count("expired") == 2
    assert (await load_user(3040)).status == UserStatus.INACTIVE.value
    assert (await load_user(3041)).status == UserStatus.INACTIVE.value
    assert notifier.removed == [(engine.gatekeeper.channel_id, 3041)]
    assert (await load_user(3040)).eviction_pending is True


async def test_failed_eviction_is_retried_next_sweep(engine, create_user, load_user, notifier, clock):
    await create_user(3042, status=UserStatus.ACTIVE, subscription_end=clock() - timedelta(days=1))
    notifier.member_statuses[3042] = "member"
    original_remove = notifier.remove_member

    async def timed_out_remove(chat_id, telegram_id):
        raise RuntimeError("Telegram server says - Request timeout error")

    notifier.remove_member = timed_out_remove
    first = await engine.process_expired_subscriptions()
    notifier.remove_member = original_remove
    clock.advance(minutes=5)
    second = await engine.process_expired_subscriptions()
    third = await engine.process_expired_subscriptions()

    assert first.count("expired") == 1
    assert first.errors == 1
    assert second.candidates == 1
    assert second.count("evicted") == 1
    assert notifier.removed == [(engine.gatekeeper.channel_id, 3042)]
    assert (await load_user(3042)).eviction_pending is False
    assert third.candidates == 0
    # expiry notice is not repeated by the retry
    assert notifier.messages_to(3042) == [texts.SUBSCRIPTION_EXPIRED]


async def test_renewal_cancels_pending_eviction(engine, create_user, load_user, notifier, clock):
    await create_user(3043, status=UserStatus.ACTIVE, subscription_end=clock() - timedelta(days=1))
    notifier.member_statuses[3043] = "member"
    original_remove = notifier.remove_member

    async def timed_out_remove(chat_id, telegram_id):
        raise RuntimeError("Request timeout error")

    notifier.remove_member = timed_out_remove
    await engine.process_expired_subscriptions()
    notifier.remove_member = original_remove

    handle = await engine.initiate_charge(3043, "yookassa")
    await engine.reconcile(GatewayEvent(
        gateway="yookassa",
        event_type="payment.succeeded",
        charge_id=handle.payment_id,
        status=PaymentStatus.SUCCEEDED
    ))
    report = await engine.process_expired_subscriptions()

    assert report.candidates == 0
    assert notifier.removed == []
    user = await load_user(3043)
    assert user.status == UserStatus.ACTIVE.value
    assert user.eviction_pending is False


async def test_expiry_waits_for_due_stored_card(engine, create_autopay_user, load_user, notifier, clock):
    await create_autopay_user(3050, clock() - timedelta(minutes=5), clock() - timedelta(minutes=1))
    notifier.member_statuses[3050] = "member"

    expiry = await engine.process_expired_subscriptions()
    recurring = await engine.process_recurring_charges()

    assert expiry.count("deferred") == 1
    assert recurring.count("succeeded") == 1
    user = await load_user(3050)
    assert user.status == UserStatus.ACTIVE.value
    assert user.auto_payment_enabled is True
    assert notifier.removed == []


async def test_expiry_waits_for_pending_recurring_charge(engine, create_autopay_user, card_gateway, load_user, notifier, clock):
    await create_autopay_user(3051, clock() - timedelta(minutes=5), clock() - timedelta(minutes=1))
    notifier.member_statuses[3051] = "member"
    card_gateway.instrument_results = [PaymentStatus.PENDING]

    assert (await engine.process_recurring_charges()).count("pending") == 1
    assert (await engine.process_expired_subscriptions()).count("deferred") == 1

    # the card is declined for good, so nothing is left to wait for
    await engine.reconcile(GatewayEvent(
        gateway="yookassa",
        event_type="payment.canceled",
        charge_id="auto-1",
        status=PaymentStatus.CANCELLED,
        failure_code="card_expired"
    ))
    report = await engine.process_expired_subscriptions()

    assert report.count("expired") == 1
    assert report.count("evicted") == 1
    user = await load_user(3051)
    assert user.status == UserStatus.INACTIVE.value
    assert user.auto_payment_enabled is False
