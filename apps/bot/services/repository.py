from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, desc, or_
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.user import User, UserStatus
from shared.models.payment import Payment, PaymentStatus
from shared.models.payment_method import PaymentMethod
from shared.models.channel_request import ChannelRequest, JoinRequestStatus
from shared.models.audit_log import AuditLog


class Repository:
    """Persistence operations used by the engine and the gatekeeper.

    Methods flush but never commit; the caller owns the transaction so that a
    status CAS and the subscription write it guards land together.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self):
        await self.session.commit()

    async def rollback(self):
        await self.session.rollback()

    # Users

    async def get_user(self, telegram_id: int, for_update: bool = False) -> Optional[User]:
        query = select(User).where(User.telegram_id == telegram_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int, for_update: bool = False) -> Optional[User]:
        query = select(User).where(User.id == user_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def upsert_user(self, telegram_id: int, username: Optional[str] = None, first_name: Optional[str] = None) -> User:
        user = await self.get_user(telegram_id)
        if not user:
            user = User(
                telegram_id=telegram_id,
                username=username,
                first_name=first_name,
                status=UserStatus.INACTIVE.value,
                auto_payment_enabled=False
            )
            self.session.add(user)
        else:
            if username is not None:
                user.username = username
            if first_name is not None:
                user.first_name = first_name
        await self.session.flush()
        return user

    async def set_email(self, user: User, email: str):
        user.email = email
        await self.session.flush()

    async def set_subscription(self, user: User, active: bool, end: Optional[datetime]):
        user.status = UserStatus.ACTIVE.value if active else UserStatus.INACTIVE.value
        user.subscription_end = end
        if active:
            user.eviction_pending = False
        await self.session.flush()

    async def mark_for_eviction(self, user: User):
        user.eviction_pending = True
        await self.session.flush()

    async def clear_eviction(self, telegram_id: int):
        await self.session.execute(
            update(User)
            .where(User.telegram_id == telegram_id)
            .where(User.eviction_pending == True)
            .values(eviction_pending=False)
        )

    async def set_auto_pay(
        self,
        user: User,
        enabled: bool,
        payment_method_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        interval_minutes: Optional[int] = None
    ):
        user.auto_payment_enabled = enabled
        if payment_method_id is not None:
            user.payment_method_id = payment_method_id
        if amount is not None:
            user.auto_payment_amount = amount
        if interval_minutes is not None:
            user.auto_payment_interval_minutes = interval_minutes
        await self.session.flush()

    async def get_auto_payment_candidates(self, now: datetime) -> List[int]:
        """Telegram ids of users whose stored card is due for a recurring charge"""
        result = await self.session.execute(
            select(User.telegram_id)
            .join(PaymentMethod, PaymentMethod.payment_method_id == User.payment_method_id)
            .where(User.auto_payment_enabled == True)
            .where(User.status == UserStatus.ACTIVE.value)
            .where(User.payment_method_id.isnot(None))
            .where(PaymentMethod.is_active == True)
            .where(PaymentMethod.auto_payment_enabled == True)
            .where(or_(PaymentMethod.next_charge_at.is_(None), PaymentMethod.next_charge_at <= now))
            .order_by(User.id)
        )
        return list(result.scalars().all())

    async def get_expired_users(self, now: datetime) -> List[int]:
        result = await self.session.execute(
            select(User.telegram_id)
            .where(User.status == UserStatus.ACTIVE.value)
            .where(User.subscription_end.isnot(None))
            .where(User.subscription_end <= now)
            .order_by(User.id)
        )
        return list(result.scalars().all())

    async def get_pending_evictions(self) -> List[int]:
        """Deactivated users whose removal from the channel has not gone through yet"""
        result = await self.session.execute(
            select(User.telegram_id)
            .where(User.eviction_pending == True)
            .where(User.status == UserStatus.INACTIVE.value)
            .order_by(User.id)
        )
        return list(result.scalars().all())

    # Payments

    async def create_payment(
        self,
        user: User,
        charge_id: str,
        gateway: str,
        amount: Decimal,
        currency: str,
        purpose: str,
        purpose_data: Optional[dict] = None,
        payment_method_id: Optional[str] = None,
        confirmation_url: Optional[str] = None
    ) -> Payment:
        payment = Payment(
            payment_id=charge_id,
            user_id=user.id,
            gateway=gateway,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING.value,
            purpose=purpose,
            purpose_data=purpose_data,
            payment_method_id=payment_method_id,
            confirmation_url=confirmation_url
        )
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_payment_by_charge_id(self, charge_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.payment_id == charge_id)
        )
        return result.scalar_one_or_none()

    async def update_payment_status(self, charge_id: str, status: PaymentStatus, confirmed_at: Optional[datetime] = None) -> bool:
        """Move a payment out of ``pending``. Returns False when it was already terminal."""
        result = await self.session.execute(
            update(Payment)
            .where(Payment.payment_id == charge_id)
            .where(Payment.status == PaymentStatus.PENDING.value)
            .values(status=status.value, confirmed_at=confirmed_at)
        )
        return result.rowcount == 1

    async def get_pending_recurring_payment(self, user: User) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.user_id == user.id)
            .where(Payment.purpose == "recurring_charge")
            .where(Payment.status == PaymentStatus.PENDING.value)
            .order_by(desc(Payment.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    # Stored instruments

    async def get_instrument(self, payment_method_id: str) -> Optional[PaymentMethod]:
        result = await self.session.execute(
            select(PaymentMethod).where(PaymentMethod.payment_method_id == payment_method_id)
        )
        return result.scalar_one_or_none()

    async def upsert_instrument(
        self,
        user: User,
        payment_method_id: str,
        type: str,
        card_mask: Optional[str],
        gateway: str,
        next_charge_at: Optional[datetime] = None
    ) -> PaymentMethod:
        instrument = await self.get_instrument(payment_method_id)
        if not instrument:
            instrument = PaymentMethod(payment_method_id=payment_method_id, user_id=user.id)
            self.session.add(instrument)
        instrument.gateway = gateway
        instrument.type = type or "card"
        instrument.card_mask = card_mask
        instrument.is_active = True
        instrument.auto_payment_enabled = True
        instrument.next_charge_at = next_charge_at
        instrument.deactivated_at = None
        instrument.deactivation_reason = None
        await self.session.flush()
        return instrument

    async def deactivate_instrument(self, payment_method_id: str, reason: str, now: datetime):
        await self.session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.payment_method_id == payment_method_id)
            .values(
                is_active=False,
                auto_payment_enabled=False,
                deactivated_at=now,
                deactivation_reason=reason[:255]
            )
        )

    async def schedule_next_charge(self, payment_method_id: str, at: datetime):
        await self.session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.payment_method_id == payment_method_id)
            .values(next_charge_at=at)
        )

    # Channel join requests

    async def get_join_request(self, request_id: int, for_update: bool = False) -> Optional[ChannelRequest]:
        query = select(ChannelRequest).where(ChannelRequest.id == request_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_pending_join_request(self, telegram_id: int, chat_id: int) -> Optional[ChannelRequest]:
        result = await self.session.execute(
            select(ChannelRequest)
            .where(ChannelRequest.telegram_id == telegram_id)
            .where(ChannelRequest.chat_id == chat_id)
            .where(ChannelRequest.status == JoinRequestStatus.PENDING.value)
            .order_by(desc(ChannelRequest.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_join_request(
        self,
        telegram_id: int,
        chat_id: int,
        requested_at: datetime,
        username: Optional[str] = None,
        chat_title: Optional[str] = None
    ) -> ChannelRequest:
        request = ChannelRequest(
            telegram_id=telegram_id,
            chat_id=chat_id,
            username=username,
            chat_title=chat_title,
            status=JoinRequestStatus.PENDING.value,
            requested_at=requested_at
        )
        self.session.add(request)
        await self.session.flush()
        return request

    async def update_join_request_status(
        self,
        request: ChannelRequest,
        status: JoinRequestStatus,
        processed_by: str,
        processed_at: datetime
    ) -> bool:
        """Decide a pending request. Returns False when it was already terminal."""
        result = await self.session.execute(
            update(ChannelRequest)
            .where(ChannelRequest.id == request.id)
            .where(ChannelRequest.status == JoinRequestStatus.PENDING.value)
            .values(status=status.value, processed_by=processed_by, processed_at=processed_at)
        )
        return result.rowcount == 1

    async def list_join_requests(self, status: Optional[JoinRequestStatus] = None, limit: int = 100) -> List[ChannelRequest]:
        query = select(ChannelRequest).order_by(desc(ChannelRequest.id)).limit(limit)
        if status is not None:
            query = query.where(ChannelRequest.status == status.value)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # Audit log

    async def append_audit_log(self, telegram_id: int, action: str, details: Optional[str] = None):
        self.session.add(AuditLog(telegram_id=telegram_id, action=action, details=details))
        await self.session.flush()

    async def get_audit_log(self, telegram_id: int) -> List[AuditLog]:
        result = await self.session.execute(
            select(AuditLog).where(AuditLog.telegram_id == telegram_id).order_by(AuditLog.id)
        )
        return list(result.scalars().all())
