from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional
import os


class Settings(BaseSettings):
    bot_token: str
    database_url: str
    redis_url: str = "redis://localhost:6379/0"
    admin_secret: str

    # Private channel
    private_channel_id: int
    private_channel_link: Optional[str] = None
    auto_approve_join_requests: bool = True

    # YooKassa (card payments, stored instruments)
    yookassa_shop_id: str
    yookassa_secret_key: str
    yookassa_webhook_secret: str
    yookassa_api_url: str = "https://api.yookassa.ru/v3"

    # CryptoCloud (crypto invoices, disabled when not configured)
    cryptocloud_api_key: Optional[str] = None
    cryptocloud_shop_id: Optional[str] = None
    cryptocloud_secret: Optional[str] = None
    cryptocloud_api_url: str = "https://api.cryptocloud.plus/v2"

    # Subscription terms
    subscription_price: Decimal = Decimal("10.00")
    auto_payment_price: Decimal = Decimal("10.00")
    currency: str = "RUB"
    subscription_period_days: int = 30
    extend_from_current_end: bool = True
    receipt_email_required: bool = True

    # Recurring payments
    auto_payment_interval_minutes: int = 30 * 24 * 60
    auto_payment_lead_minutes: int = 24 * 60  # charge stored cards this long before the period ends
    auto_payment_recheck_minutes: int = 2
    recurring_sweep_interval_seconds: int = 60
    expiry_sweep_interval_seconds: int = 300
    gateway_timeout_seconds: float = 15.0

    # URLs
    payment_return_url: str = "https://t.me"

    # Server settings
    log_level: str = "INFO"
    admin_cors_origins: str = "http://localhost:3000,http://localhost:5173"

    class Config:
        # Look for .env file in project root
        env_file = os.path.join(os.path.dirname(__file__), "../..", ".env")

    @property
    def cryptocloud_enabled(self) -> bool:
        return bool(self.cryptocloud_api_key and self.cryptocloud_shop_id and self.cryptocloud_secret)


settings = Settings()
