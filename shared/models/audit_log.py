from sqlalchemy import Column, String, BigInteger, Text
from .base import BaseModel


class AuditLog(BaseModel):
    __tablename__ = "audit_log"
    
    telegram_id = Column(BigInteger, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # payment_success, auto_payment_disabled, etc.
    details = Column(Text, nullable=True)
