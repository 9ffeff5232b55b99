from sqlalchemy import Column, String, BigInteger, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from .base import BaseModel


class PaymentMethod(BaseModel):
    __tablename__ = "payment_methods"
    
    payment_method_id = Column(String, unique=True, index=True, nullable=False)  # Gateway instrument id
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    gateway = Column(String, nullable=False, default="yookassa")
    
    type = Column(String, nullable=False, default="card")
    card_mask = Column(String, nullable=True)  # **** **** **** 1234
    
    # Status
    is_active = Column(Boolean, nullable=False, default=True)
    auto_payment_enabled = Column(Boolean, nullable=False, default=True)
    next_charge_at = Column(DateTime, nullable=True, index=True)
    deactivated_at = Column(DateTime, nullable=True)
    deactivation_reason = Column(String, nullable=True)
    
    # Relationships
    user = relationship("User", back_populates="payment_methods")
