import os
import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# Settings are read at import time, so the environment must be ready first
os.environ["BOT_TOKEN"] = "123456789:AAHtestTOKENtestTOKENtestTOKENtest123"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_SECRET"] = "admin-test-secret"
os.environ["PRIVATE_CHANNEL_ID"] = "-1001234567890"
os.environ["PRIVATE_CHANNEL_LINK"] = "https://t.me/+privateInvite"
os.environ["YOOKASSA_SHOP_ID"] = "shop-1"
os.environ["YOOKASSA_SECRET_KEY"] = "test_secret_key"
os.environ["YOOKASSA_WEBHOOK_SECRET"] = "yk-webhook-secret"
os.environ["CRYPTOCLOUD_API_KEY"] = "cc-api-key"
os.environ["CRYPTOCLOUD_SHOP_ID"] = "cc-shop"
os.environ["CRYPTOCLOUD_SECRET"] = "cc-webhook-secret"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shared.config.settings import settings as app_settings
from shared.models.base import Base
from shared.models.payment import PaymentStatus
from shared.models.user import User, UserStatus
from shared.models.payment_method import PaymentMethod
from apps.bot.services.channel_gatekeeper import ChannelGatekeeper
from apps.bot.services.gateway import ChargeResult, GatewayEvent, InstrumentInfo, PaymentGateway
from apps.bot.services.repository import Repository
from apps.bot.services.subscription_engine import SubscriptionEngine

CHANNEL_ID = -1001234567890
WEBHOOK_SECRET = "fake-webhook-secret"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "sweep: mark test as exercising a periodic sweep"
    )
    config.addinivalue_line(
        "markers",
        "scenario: mark test as an end-to-end subscription scenario"
    )


class FakeClock:
    """Controllable naive-UTC clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """In-memory gateway. Queue results or exceptions on ``instrument_results``."""

    def __init__(self, name="yookassa", supports_saved_instruments=True, requires_receipt_email=False):
        super().__init__(WEBHOOK_SECRET)
        self.name = name
        self.supports_saved_instruments = supports_saved_instruments
        self.requires_receipt_email = requires_receipt_email
        self.created = []
        self.instrument_charges = []
        self.instrument_results = []
        self.charges = {}
        self.create_error = None
        self._counter = 0

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def create_charge(self, amount, description, metadata, save_instrument=False, email=None):
        if self.create_error:
            raise self.create_error
        charge_id = self._next_id("charge")
        result = ChargeResult(
            charge_id=charge_id,
            status=PaymentStatus.PENDING,
            amount=Decimal(amount),
            confirmation_url=f"https://pay.example/{charge_id}"
        )
        self.created.append({"amount": amount, "metadata": metadata, "save_instrument": save_instrument, "email": email})
        self.charges[charge_id] = result
        return result

    async def create_charge_with_instrument(self, instrument_id, amount, description, metadata, email=None):
        self.instrument_charges.append({"instrument_id": instrument_id, "amount": amount, "metadata": metadata})
        outcome = self.instrument_results.pop(0) if self.instrument_results else PaymentStatus.SUCCEEDED
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            status, failure_code = outcome
        else:
            status, failure_code = outcome, None
        result = ChargeResult(
            charge_id=self._next_id("auto"),
            status=status,
            amount=Decimal(amount),
            failure_code=failure_code
        )
        self.charges[result.charge_id] = result
        return result

    async def get_charge(self, charge_id):
        return self.charges[charge_id]

    def settle(self, charge_id, status, instrument=None, failure_code=None):
        """Simulate the gateway finishing a charge (what get_charge reports next)"""
        current = self.charges[charge_id]
        self.charges[charge_id] = ChargeResult(
            charge_id=charge_id,
            status=status,
            amount=current.amount,
            confirmation_url=current.confirmation_url,
            instrument=instrument,
            failure_code=failure_code
        )

    def parse_webhook(self, raw_body):
        data = json.loads(raw_body)
        instrument = None
        if data.get("instrument_id"):
            instrument = InstrumentInfo(
                instrument_id=data["instrument_id"],
                masked=data.get("masked"),
                saved=data.get("saved", True)
            )
        status = data.get("status")
        return GatewayEvent(
            gateway=self.name,
            event_type=data.get("event", "payment.updated"),
            charge_id=data.get("charge_id"),
            status=PaymentStatus(status) if status else None,
            instrument=instrument,
            failure_code=data.get("failure_code")
        )


class RecordingNotifier:
    """Stands in for TelegramNotifier and records every outbound call"""

    def __init__(self):
        self.messages = []
        self.approved = []
        self.declined = []
        self.removed = []
        self.member_statuses = {}
        self.fail_approve = False

    async def send_message(self, telegram_id, text, buttons=None):
        self.messages.append((telegram_id, text, buttons))
        return True

    async def approve_join_request(self, chat_id, telegram_id):
        if self.fail_approve:
            raise RuntimeError("Telegram API unavailable")
        self.approved.append((chat_id, telegram_id))

    async def decline_join_request(self, chat_id, telegram_id):
        self.declined.append((chat_id, telegram_id))

    async def get_member_status(self, chat_id, telegram_id):
        return self.member_statuses.get(telegram_id)

    async def remove_member(self, chat_id, telegram_id):
        self.removed.append((chat_id, telegram_id))

    def messages_to(self, telegram_id):
        return [text for tid, text, _ in self.messages if tid == telegram_id]


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def test_settings():
    return app_settings.model_copy(update={
        "subscription_price": Decimal("10.00"),
        "auto_payment_price": Decimal("10.00"),
        "currency": "RUB",
        "subscription_period_days": 30,
        "extend_from_current_end": True,
        "auto_payment_interval_minutes": 30 * 24 * 60,
        "auto_payment_lead_minutes": 24 * 60,
        "auto_payment_recheck_minutes": 2,
        "private_channel_id": CHANNEL_ID,
        "auto_approve_join_requests": True,
    })


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def card_gateway():
    return FakeGateway("yookassa", supports_saved_instruments=True)


@pytest.fixture
def crypto_gateway():
    return FakeGateway("cryptocloud", supports_saved_instruments=False)


@pytest.fixture
def gatekeeper(session_factory, notifier, clock):
    return ChannelGatekeeper(session_factory, notifier, channel_id=CHANNEL_ID, auto_approve=True, clock=clock)


@pytest.fixture
def engine(session_factory, card_gateway, crypto_gateway, notifier, gatekeeper, test_settings, clock):
    gateways = {card_gateway.name: card_gateway, crypto_gateway.name: crypto_gateway}
    return SubscriptionEngine(session_factory, gateways, notifier, gatekeeper, test_settings, clock=clock)


@pytest.fixture
def create_user(session_factory):
    async def _create_user(
        telegram_id,
        status=UserStatus.INACTIVE,
        subscription_end=None,
        email="user@example.com",
        username=None
    ):
        async with session_factory() as session:
            repo = Repository(session)
            user = await repo.upsert_user(telegram_id, username=username, first_name="Test")
            user.email = email
            await repo.set_subscription(user, status == UserStatus.ACTIVE, subscription_end)
            await repo.commit()
            return user

    return _create_user


@pytest.fixture
def create_autopay_user(session_factory, create_user):
    """Active user with a stored card that is due for a recurring charge"""
    async def _create_autopay_user(telegram_id, subscription_end, next_charge_at, instrument_id=None):
        await create_user(telegram_id, status=UserStatus.ACTIVE, subscription_end=subscription_end)
        instrument_id = instrument_id or f"pm-{telegram_id}"
        async with session_factory() as session:
            repo = Repository(session)
            user = await repo.get_user(telegram_id)
            await repo.upsert_instrument(
                user=user,
                payment_method_id=instrument_id,
                type="bank_card",
                card_mask="**** **** **** 4242",
                gateway="yookassa",
                next_charge_at=next_charge_at
            )
            await repo.set_auto_pay(user, True, payment_method_id=instrument_id, amount=Decimal("10.00"), interval_minutes=30 * 24 * 60)
            await repo.commit()
        return instrument_id

    return _create_autopay_user


@pytest.fixture
def load_user(session_factory):
    async def _load_user(telegram_id) -> User:
        async with session_factory() as session:
            return await Repository(session).get_user(telegram_id)

    return _load_user


@pytest.fixture
def load_instrument(session_factory):
    async def _load_instrument(payment_method_id) -> PaymentMethod:
        async with session_factory() as session:
            return await Repository(session).get_instrument(payment_method_id)

    return _load_instrument


@pytest.fixture
def load_audit(session_factory):
    async def _load_audit(telegram_id):
        async with session_factory() as session:
            return [entry.action for entry in await Repository(session).get_audit_log(telegram_id)]

    return _load_audit
