"""
Subscription lifecycle: charge creation, payment reconciliation, recurring
charges and expiry
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.config.settings import Settings
from shared.models.payment import Payment, PaymentStatus
from shared.models.user import User, UserStatus
from apps.bot.utils import texts
from apps.bot.utils.time_helper import Clock, extend_subscription_end, utcnow
from .charge_purpose import InitialSubscription, RecurringCharge, gateway_metadata, load_purpose
from .exceptions import GatewayError, InstrumentFatalError, NotFoundError, ValidationError
from .gateway import ChargeResult, GatewayEvent, InstrumentInfo, PaymentGateway, classify_cancellation, classify_failure
from .notifier import Button, TelegramNotifier
from .repository import Repository

logger = logging.getLogger(__name__)

Purpose = Union[InitialSubscription, RecurringCharge]
Message = Tuple[int, str, Optional[List[List[Button]]]]


@dataclass
class ChargeHandle:
    payment_id: str
    gateway: str
    amount: Decimal
    currency: str
    confirmation_url: Optional[str]


@dataclass
class Settlement:
    outcome: str
    messages: List[Message] = field(default_factory=list)


@dataclass
class SweepReport:
    candidates: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def record(self, outcome: str):
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: str) -> int:
        return self.outcomes.get(outcome, 0)


class SubscriptionEngine:
    """Owns every write to subscription state.

    Every settlement path (webhook, "check payment" button, recurring sweep)
    locks the user row and then moves the payment out of ``pending`` with a
    conditional update, so a payment extends the subscription at most once.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateways: Dict[str, PaymentGateway],
        notifier: TelegramNotifier,
        gatekeeper,
        settings: Settings,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.notifier = notifier
        self.gatekeeper = gatekeeper
        self.settings = settings
        self.clock = clock

    @property
    def period(self) -> timedelta:
        return timedelta(days=self.settings.subscription_period_days)

    @property
    def auto_payment_interval(self) -> timedelta:
        return timedelta(minutes=self.settings.auto_payment_interval_minutes)

    @property
    def auto_payment_lead(self) -> timedelta:
        return timedelta(minutes=self.settings.auto_payment_lead_minutes)

    def _next_charge_at(self, subscription_end: Optional[datetime], now: datetime) -> datetime:
        """A stored card is charged ``auto_payment_lead`` before the paid period
        ends, and never later than the end itself while it is still ahead.
        """
        if subscription_end is None or subscription_end <= now:
            return now + self.auto_payment_interval
        charge_at = subscription_end - self.auto_payment_lead
        if charge_at > now:
            return charge_at
        return min(now + self.auto_payment_interval, subscription_end)

    def get_gateway(self, name: str) -> PaymentGateway:
        gateway = self.gateways.get(name)
        if gateway is None:
            raise ValidationError("gateway", f"Payment gateway {name!r} is not available")
        return gateway

    # Users

    async def register_user(self, telegram_id: int, username: Optional[str] = None, first_name: Optional[str] = None) -> User:
        async with self.session_factory() as session:
            repo = Repository(session)
            is_new = await repo.get_user(telegram_id) is None
            user = await repo.upsert_user(telegram_id, username, first_name)
            if is_new:
                await repo.append_audit_log(telegram_id, "user_registered", user.display_name)
                logger.info(f"Registered user {telegram_id}")
            await repo.commit()
            return user

    async def get_user(self, telegram_id: int) -> Optional[User]:
        async with self.session_factory() as session:
            return await Repository(session).get_user(telegram_id)

    async def set_email(self, telegram_id: int, email: str):
        async with self.session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id)
            if user is None:
                raise NotFoundError(f"User {telegram_id} not found")
            await repo.set_email(user, email)
            await repo.append_audit_log(telegram_id, "email_set")
            await repo.commit()

    async def is_entitled(self, telegram_id: int) -> bool:
        user = await self.get_user(telegram_id)
        return user is not None and user.is_entitled(self.clock())

    # Charges

    async def initiate_charge(self, telegram_id: int, gateway_name: str) -> ChargeHandle:
        """Create a charge and record it as ``pending``.

        Raises ValidationError when the gateway needs a receipt email the user
        has not given yet; GatewayError leaves nothing persisted.
        """
        gateway = self.get_gateway(gateway_name)
        now = self.clock()

        async with self.session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id)
            if user is None:
                raise NotFoundError(f"User {telegram_id} not found")
            if gateway.requires_receipt_email and not user.email:
                raise ValidationError("email", "Receipt email is required for card payments")

            purpose = InitialSubscription(
                telegram_id=telegram_id,
                save_instrument=gateway.supports_saved_instruments
            )
            amount = self.settings.subscription_price
            order_id = f"sub-{telegram_id}-{int(now.timestamp())}"

            result = await gateway.create_charge(
                amount=amount,
                description=purpose.description(self.settings.subscription_period_days),
                metadata=gateway_metadata(purpose, order_id),
                save_instrument=purpose.save_instrument,
                email=user.email
            )

            await repo.create_payment(
                user=user,
                charge_id=result.charge_id,
                gateway=gateway.name,
                amount=amount,
                currency=self.settings.currency,
                purpose=purpose.kind,
                purpose_data=purpose.model_dump(),
                confirmation_url=result.confirmation_url
            )
            await repo.append_audit_log(telegram_id, "payment_created", f"{gateway.name} charge={result.charge_id} amount={amount}")
            await repo.commit()

        logger.info(f"Created {gateway.name} charge {result.charge_id} for user {telegram_id}")
        return ChargeHandle(
            payment_id=result.charge_id,
            gateway=gateway.name,
            amount=amount,
            currency=self.settings.currency,
            confirmation_url=result.confirmation_url
        )

    async def reconcile(self, event: GatewayEvent) -> bool:
        """Apply a verified gateway event. Returns True when state changed."""
        if not event.is_terminal:
            logger.info(f"Ignoring {event.gateway} event {event.event_type} for charge {event.charge_id}")
            return False
        return await self._settle_charge(event.charge_id, event.status, event.instrument, event.failure_code)

    async def refresh_payment(self, charge_id: str, telegram_id: Optional[int] = None) -> PaymentStatus:
        """Ask the gateway for the charge state and reconcile it like a webhook"""
        async with self.session_factory() as session:
            payment = await Repository(session).get_payment_by_charge_id(charge_id)
            if payment is None:
                raise NotFoundError(f"Payment {charge_id} not found")
            if telegram_id is not None:
                owner = await Repository(session).get_user_by_id(payment.user_id)
                if owner is None or owner.telegram_id != telegram_id:
                    raise NotFoundError(f"Payment {charge_id} not found")
            status = PaymentStatus(payment.status)
            gateway_name = payment.gateway

        if status.is_terminal:
            return status

        result = await self.get_gateway(gateway_name).get_charge(charge_id)
        if result.status.is_terminal:
            await self._settle_charge(charge_id, result.status, result.instrument, result.failure_code)
        return result.status

    async def _settle_charge(
        self,
        charge_id: str,
        status: PaymentStatus,
        instrument: Optional[InstrumentInfo],
        failure_code: Optional[str]
    ) -> bool:
        now = self.clock()
        async with self.session_factory() as session:
            repo = Repository(session)
            payment = await repo.get_payment_by_charge_id(charge_id)
            if payment is None:
                logger.warning(f"Event for unknown charge {charge_id}, ignoring")
                return False
            if PaymentStatus(payment.status).is_terminal:
                logger.info(f"Payment {charge_id} is already {payment.status}, duplicate event ignored")
                return False

            user = await repo.get_user_by_id(payment.user_id, for_update=True)
            settlement = await self._settle(repo, user, payment, status, instrument, failure_code, now)
            if settlement is None:
                await repo.rollback()
                logger.info(f"Payment {charge_id} was settled concurrently, event ignored")
                return False
            await repo.commit()

        await self._deliver(settlement.messages)
        return True

    async def _settle(
        self,
        repo: Repository,
        user: User,
        payment: Payment,
        status: PaymentStatus,
        instrument: Optional[InstrumentInfo],
        failure_code: Optional[str],
        now: datetime
    ) -> Optional[Settlement]:
        """Move ``payment`` to a terminal status and apply its effects.

        The caller holds the user row lock. Returns None when the payment had
        already left ``pending``.
        """
        if not await repo.update_payment_status(payment.payment_id, status, now if status == PaymentStatus.SUCCEEDED else None):
            return None

        purpose = load_purpose(payment.purpose_data)
        if status == PaymentStatus.SUCCEEDED:
            return await self._apply_success(repo, user, payment, purpose, instrument, now)
        return await self._apply_cancellation(repo, user, payment, purpose, failure_code, now)

    def _extended_end(self, user: User, now: datetime) -> Optional[datetime]:
        if user.status == UserStatus.ACTIVE.value and user.subscription_end is None:
            # no time limit stays no time limit
            return None
        current_end = user.subscription_end if user.status == UserStatus.ACTIVE.value else None
        return extend_subscription_end(current_end, now, self.period, self.settings.extend_from_current_end)

    async def _apply_success(
        self,
        repo: Repository,
        user: User,
        payment: Payment,
        purpose: Optional[Purpose],
        instrument: Optional[InstrumentInfo],
        now: datetime
    ) -> Settlement:
        new_end = self._extended_end(user, now)
        await repo.set_subscription(user, True, new_end)
        end_text = texts.format_end(new_end)
        settlement = Settlement(outcome="succeeded")

        if isinstance(purpose, RecurringCharge):
            await repo.schedule_next_charge(purpose.payment_method_id, self._next_charge_at(new_end, now))
            await repo.append_audit_log(user.telegram_id, "auto_payment_succeeded", f"charge={payment.payment_id} end={new_end}")
            settlement.messages.append((user.telegram_id, texts.AUTO_PAYMENT_SUCCEEDED.format(
                amount=payment.amount, currency=payment.currency, end=end_text), None))
            logger.info(f"Recurring charge {payment.payment_id} succeeded for user {user.telegram_id}, active until {new_end}")
            return settlement

        await repo.append_audit_log(user.telegram_id, "payment_succeeded", f"charge={payment.payment_id} end={new_end}")
        settlement.messages.append((user.telegram_id, texts.PAYMENT_SUCCEEDED.format(
            amount=payment.amount, currency=payment.currency, end=end_text), None))

        gateway = self.gateways.get(payment.gateway)
        if instrument and instrument.saved and gateway is not None and gateway.supports_saved_instruments:
            await repo.upsert_instrument(
                user=user,
                payment_method_id=instrument.instrument_id,
                type=instrument.type,
                card_mask=instrument.masked,
                gateway=payment.gateway,
                next_charge_at=self._next_charge_at(new_end, now)
            )
            await repo.set_auto_pay(
                user,
                True,
                payment_method_id=instrument.instrument_id,
                amount=self.settings.auto_payment_price,
                interval_minutes=self.settings.auto_payment_interval_minutes
            )
            payment.payment_method_id = instrument.instrument_id
            await repo.append_audit_log(user.telegram_id, "auto_payment_enabled", f"instrument={instrument.masked or instrument.instrument_id}")
            settlement.messages.append((user.telegram_id, texts.AUTO_PAYMENT_ENABLED.format(
                card=instrument.masked or instrument.type), [[Button(texts.DISABLE_AUTOPAY_BUTTON, callback_data="disable_autopay")]]))

        logger.info(f"Payment {payment.payment_id} succeeded for user {user.telegram_id}, active until {new_end}")
        return settlement

    async def _apply_cancellation(
        self,
        repo: Repository,
        user: User,
        payment: Payment,
        purpose: Optional[Purpose],
        failure_code: Optional[str],
        now: datetime
    ) -> Settlement:
        if isinstance(purpose, RecurringCharge):
            error = classify_cancellation(
                ChargeResult(charge_id=payment.payment_id, status=PaymentStatus.CANCELLED,
                             amount=payment.amount, failure_code=failure_code),
                payment.gateway
            )
            return await self._recurring_failure(repo, user, purpose.payment_method_id, error, now)

        await repo.append_audit_log(user.telegram_id, "payment_cancelled", f"charge={payment.payment_id} reason={failure_code}")
        logger.info(f"Payment {payment.payment_id} cancelled for user {user.telegram_id}: {failure_code}")
        return Settlement(outcome="cancelled", messages=[(user.telegram_id, texts.PAYMENT_CANCELLED.format(
            amount=payment.amount, currency=payment.currency), None)])

    async def _recurring_failure(
        self,
        repo: Repository,
        user: User,
        payment_method_id: str,
        error: GatewayError,
        now: datetime
    ) -> Settlement:
        if isinstance(error, InstrumentFatalError):
            disabled = await self._disable_instrument(repo, user, payment_method_id, f"fatal: {error}", now)
            logger.warning(f"Auto-pay disabled for user {user.telegram_id}: {error}")
            messages = []
            if disabled:
                messages.append((user.telegram_id, texts.AUTO_PAYMENT_DISABLED.format(reason=error.message), None))
            return Settlement(outcome="disabled", messages=messages)

        await repo.schedule_next_charge(payment_method_id, self._next_charge_at(user.subscription_end, now))
        await repo.append_audit_log(user.telegram_id, "auto_payment_failed", f"transient: {error}")
        logger.warning(f"Recurring charge for user {user.telegram_id} failed transiently, retrying next cycle: {error}")
        return Settlement(outcome="transient")

    async def _disable_instrument(self, repo: Repository, user: User, payment_method_id: str, reason: str, now: datetime) -> bool:
        """Returns False when auto-pay was already off, so callers notify once"""
        instrument = await repo.get_instrument(payment_method_id)
        was_enabled = user.auto_payment_enabled or (instrument is not None and instrument.is_active)
        await repo.deactivate_instrument(payment_method_id, reason, now)
        await repo.set_auto_pay(user, False)
        if was_enabled:
            await repo.append_audit_log(user.telegram_id, "auto_payment_disabled", reason)
        return was_enabled

    async def disable_auto_payment(self, telegram_id: int) -> bool:
        """Explicit cancellation by the user; the paid period is kept"""
        now = self.clock()
        async with self.session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id, for_update=True)
            if user is None or not user.auto_payment_enabled:
                return False
            if user.payment_method_id:
                await repo.deactivate_instrument(user.payment_method_id, "cancelled_by_user", now)
            await repo.set_auto_pay(user, False)
            await repo.append_audit_log(telegram_id, "auto_payment_cancelled_by_user", user.payment_method_id)
            await repo.commit()

        logger.info(f"User {telegram_id} disabled auto-pay")
        return True

    # Recurring sweep

    async def process_recurring_charges(self) -> SweepReport:
        """Charge every due stored instrument; one user's failure never stops the sweep"""
        async with self.session_factory() as session:
            candidates = await Repository(session).get_auto_payment_candidates(self.clock())

        report = SweepReport(candidates=len(candidates))
        for telegram_id in candidates:
            try:
                report.record(await self._charge_user(telegram_id))
            except Exception as e:
                report.errors += 1
                logger.error(f"Recurring charge for user {telegram_id} failed: {e}", exc_info=True)

        if candidates:
            logger.info(f"Recurring sweep: {report.candidates} due, outcomes {report.outcomes}, errors {report.errors}")
        return report

    async def _charge_user(self, telegram_id: int) -> str:
        now = self.clock()
        async with self.session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id, for_update=True)
            if (
                user is None
                or not user.auto_payment_enabled
                or user.status != UserStatus.ACTIVE.value
                or not user.payment_method_id
            ):
                return "skipped"

            instrument = await repo.get_instrument(user.payment_method_id)
            if instrument is None or not instrument.is_active or not instrument.auto_payment_enabled:
                return "skipped"
            if instrument.next_charge_at is not None and instrument.next_charge_at > now:
                return "skipped"

            gateway = self.gateways.get(instrument.gateway)
            if gateway is None or not gateway.supports_saved_instruments:
                logger.error(f"Gateway {instrument.gateway!r} cannot charge stored instrument of user {telegram_id}")
                return "skipped"

            payment = await repo.get_pending_recurring_payment(user)
            if payment is not None:
                # re-check the charge already in flight instead of creating another
                try:
                    result = await gateway.get_charge(payment.payment_id)
                except GatewayError as e:
                    logger.warning(f"Re-check of charge {payment.payment_id} for user {telegram_id} failed: {e}")
                    result = ChargeResult(charge_id=payment.payment_id, status=PaymentStatus.PENDING, amount=payment.amount)
            else:
                purpose = RecurringCharge(telegram_id=telegram_id, payment_method_id=instrument.payment_method_id)
                amount = user.auto_payment_amount or self.settings.auto_payment_price
                try:
                    result = await gateway.create_charge_with_instrument(
                        instrument_id=instrument.payment_method_id,
                        amount=amount,
                        description=purpose.description(self.settings.subscription_period_days),
                        metadata=gateway_metadata(purpose, f"auto-{telegram_id}-{int(now.timestamp())}"),
                        email=user.email
                    )
                except GatewayError as e:
                    settlement = await self._recurring_failure(repo, user, instrument.payment_method_id, classify_failure(e), now)
                    await repo.commit()
                    await self._deliver(settlement.messages)
                    return settlement.outcome

                payment = await repo.create_payment(
                    user=user,
                    charge_id=result.charge_id,
                    gateway=gateway.name,
                    amount=amount,
                    currency=self.settings.currency,
                    purpose=purpose.kind,
                    purpose_data=purpose.model_dump(),
                    payment_method_id=instrument.payment_method_id
                )
                await repo.append_audit_log(telegram_id, "auto_payment_created", f"charge={result.charge_id} amount={amount}")

            if not result.status.is_terminal:
                recheck_at = now + timedelta(minutes=self.settings.auto_payment_recheck_minutes)
                await repo.schedule_next_charge(instrument.payment_method_id, recheck_at)
                await repo.commit()
                logger.info(f"Recurring charge {payment.payment_id} for user {telegram_id} pending, re-check at {recheck_at}")
                return "pending"

            settlement = await self._settle(repo, user, payment, result.status, result.instrument, result.failure_code, now)
            if settlement is None:
                await repo.rollback()
                return "skipped"
            await repo.commit()

        await self._deliver(settlement.messages)
        return settlement.outcome

    # Expiry sweep

    async def process_expired_subscriptions(self) -> SweepReport:
        """Deactivate lapsed subscriptions and evict their holders from the channel.

        A user stays marked for eviction until the removal goes through, so a
        failed Telegram call is retried on the next sweep.
        """
        now = self.clock()
        async with self.session_factory() as session:
            repo = Repository(session)
            expired = await repo.get_expired_users(now)
            unevicted = await repo.get_pending_evictions()

        lapsed = set(expired)
        candidates = expired + [telegram_id for telegram_id in unevicted if telegram_id not in lapsed]
        report = SweepReport(candidates=len(candidates))
        for telegram_id in candidates:
            try:
                if telegram_id in lapsed:
                    outcome = await self._expire_user(telegram_id)
                    report.record(outcome)
                    if outcome != "expired":
                        continue
                report.record(await self._evict_user(telegram_id))
            except Exception as e:
                report.errors += 1
                logger.error(f"Expiry processing for user {telegram_id} failed: {e}", exc_info=True)

        if candidates:
            logger.info(f"Expiry sweep: {report.candidates} candidates, outcomes {report.outcomes}, errors {report.errors}")
        return report

    async def _expire_user(self, telegram_id: int) -> str:
        now = self.clock()
        async with self.session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id, for_update=True)
            # a renewal may have landed between the worklist query and the lock
            if (
                user is None
                or user.status != UserStatus.ACTIVE.value
                or user.subscription_end is None
                or user.subscription_end > now
            ):
                return "skipped"
            if await self._renewal_in_progress(repo, user, now):
                logger.info(f"Expiry of user {telegram_id} deferred until the recurring charge settles")
                return "deferred"

            await repo.set_subscription(user, False, user.subscription_end)
            await repo.set_auto_pay(user, False)
            await repo.mark_for_eviction(user)
            await repo.append_audit_log(telegram_id, "subscription_expired", f"end={user.subscription_end}")
            await repo.commit()

        logger.info(f"Subscription of user {telegram_id} expired")
        await self.notifier.send_message(telegram_id, texts.SUBSCRIPTION_EXPIRED)
        return "expired"

    async def _renewal_in_progress(self, repo: Repository, user: User, now: datetime) -> bool:
        """True while the recurring sweep still has to charge or settle this user's card"""
        if not user.auto_payment_enabled or not user.payment_method_id:
            return False
        if await repo.get_pending_recurring_payment(user) is not None:
            return True
        instrument = await repo.get_instrument(user.payment_method_id)
        if instrument is None or not instrument.is_active or not instrument.auto_payment_enabled:
            return False
        gateway = self.gateways.get(instrument.gateway)
        if gateway is None or not gateway.supports_saved_instruments:
            return False
        return instrument.next_charge_at is None or instrument.next_charge_at <= now

    async def _evict_user(self, telegram_id: int) -> str:
        async with self.session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id, for_update=True)
            if user is None or not user.eviction_pending:
                return "skipped"
            if user.is_entitled(self.clock()):
                # paid again before the removal went through
                await repo.clear_eviction(telegram_id)
                await repo.commit()
                return "skipped"

        removed = await self.gatekeeper.evict(telegram_id)

        async with self.session_factory() as session:
            repo = Repository(session)
            await repo.clear_eviction(telegram_id)
            await repo.commit()
        return "evicted" if removed else "not_evicted"

    async def _deliver(self, messages: List[Message]):
        for telegram_id, text, buttons in messages:
            await self.notifier.send_message(telegram_id, text, buttons)
