"""
Wiring of gateways and services shared by the bot and the admin/webhook app
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from aiogram import Bot
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.config.settings import Settings
from .channel_gatekeeper import ChannelGatekeeper
from .cryptocloud_service import CryptoCloudGateway
from .gateway import PaymentGateway
from .notifier import TelegramNotifier
from .subscription_engine import SubscriptionEngine
from .webhook_dispatcher import WebhookDispatcher
from .yookassa_service import YooKassaGateway

logger = logging.getLogger(__name__)


@dataclass
class Services:
    gateways: Dict[str, PaymentGateway]
    notifier: TelegramNotifier
    gatekeeper: ChannelGatekeeper
    engine: SubscriptionEngine
    dispatcher: WebhookDispatcher

    async def close(self):
        for gateway in self.gateways.values():
            await gateway.close()


def build_gateways(settings: Settings) -> Dict[str, PaymentGateway]:
    gateways: Dict[str, PaymentGateway] = {
        "yookassa": YooKassaGateway(
            shop_id=settings.yookassa_shop_id,
            secret_key=settings.yookassa_secret_key,
            webhook_secret=settings.yookassa_webhook_secret,
            api_url=settings.yookassa_api_url,
            return_url=settings.payment_return_url,
            currency=settings.currency,
            timeout=settings.gateway_timeout_seconds,
            receipt_required=settings.receipt_email_required,
        )
    }
    if settings.cryptocloud_enabled:
        gateways["cryptocloud"] = CryptoCloudGateway(
            api_key=settings.cryptocloud_api_key,
            shop_id=settings.cryptocloud_shop_id,
            secret=settings.cryptocloud_secret,
            api_url=settings.cryptocloud_api_url,
            currency=settings.currency,
            timeout=settings.gateway_timeout_seconds,
        )
    else:
        logger.info("CryptoCloud is not configured, crypto payments disabled")
    return gateways


def build_services(
    bot: Bot,
    settings: Settings,
    session_factory: Optional[async_sessionmaker] = None,
    gateways: Optional[Dict[str, PaymentGateway]] = None
) -> Services:
    if session_factory is None:
        from shared.config.database import async_session
        session_factory = async_session
    if gateways is None:
        gateways = build_gateways(settings)

    notifier = TelegramNotifier(bot)
    gatekeeper = ChannelGatekeeper(
        session_factory,
        notifier,
        channel_id=settings.private_channel_id,
        auto_approve=settings.auto_approve_join_requests,
    )
    engine = SubscriptionEngine(session_factory, gateways, notifier, gatekeeper, settings)
    dispatcher = WebhookDispatcher(gateways, engine)
    return Services(
        gateways=gateways,
        notifier=notifier,
        gatekeeper=gatekeeper,
        engine=engine,
        dispatcher=dispatcher,
    )
