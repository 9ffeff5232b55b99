import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, Boolean, BigInteger, DateTime, Integer, Numeric
from sqlalchemy.orm import relationship
from .base import BaseModel


class UserStatus(str, enum.Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class User(BaseModel):
    __tablename__ = "users"
    
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=False)
    username = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    email = Column(String, nullable=True)  # Required for receipted card payments
    
    # Subscription
    status = Column(String, nullable=False, default=UserStatus.INACTIVE.value, index=True)
    subscription_end = Column(DateTime, nullable=True)  # NULL means no time limit
    eviction_pending = Column(Boolean, nullable=False, default=False, index=True)  # set on expiry, cleared once removed from the channel
    
    # Auto payments
    auto_payment_enabled = Column(Boolean, nullable=False, default=False, index=True)
    payment_method_id = Column(String, nullable=True)
    auto_payment_amount = Column(Numeric(10, 2), nullable=True)
    auto_payment_interval_minutes = Column(Integer, nullable=True)
    
    # Relationships
    payments = relationship("Payment", back_populates="user")
    payment_methods = relationship("PaymentMethod", back_populates="user")

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        return self.first_name or str(self.telegram_id)

    def is_entitled(self, now: datetime) -> bool:
        """May this user access the channel at ``now``.

        Does not wait for the expiry sweep: a passed ``subscription_end``
        revokes entitlement even while ``status`` is still ``active``.
        """
        if self.status != UserStatus.ACTIVE.value:
            return False
        return self.subscription_end is None or self.subscription_end > now

    def time_left(self, now: datetime) -> Optional[float]:
        if self.subscription_end is None:
            return None
        return max(0.0, (self.subscription_end - now).total_seconds())
