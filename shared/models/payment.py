import enum

from sqlalchemy import Column, String, BigInteger, DateTime, ForeignKey, Numeric, JSON
from sqlalchemy.orm import relationship
from .base import BaseModel


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(BaseModel):
    __tablename__ = "payments"
    
    payment_id = Column(String, unique=True, index=True, nullable=False)  # Gateway charge id
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    
    # Charge details
    gateway = Column(String, nullable=False)  # yookassa, cryptocloud
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, default="RUB")
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_method_id = Column(String, nullable=True)
    confirmation_url = Column(String, nullable=True)
    
    # Purpose: initial_subscription, recurring_charge
    purpose = Column(String, nullable=False)
    purpose_data = Column(JSON, nullable=True)
    
    confirmed_at = Column(DateTime, nullable=True)
    
    # Relationships
    user = relationship("User", back_populates="payments")
