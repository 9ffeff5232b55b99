import enum

from sqlalchemy import Column, String, BigInteger, DateTime, Index, text
from .base import BaseModel


class JoinRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


AUTO_SYSTEM = "auto_system"

PENDING_ONLY = text("status = 'pending'")


class ChannelRequest(BaseModel):
    __tablename__ = "channel_requests"
    __table_args__ = (
        # At most one undecided request per user and channel
        Index(
            "uq_channel_requests_pending",
            "telegram_id",
            "chat_id",
            unique=True,
            postgresql_where=PENDING_ONLY,
            sqlite_where=PENDING_ONLY
        ),
    )
    
    # Requests from unknown users are recorded too, so no FK to users
    telegram_id = Column(BigInteger, nullable=False, index=True)
    chat_id = Column(BigInteger, nullable=False, index=True)
    chat_title = Column(String, nullable=True)
    username = Column(String, nullable=True)
    
    status = Column(String, nullable=False, default=JoinRequestStatus.PENDING.value, index=True)
    requested_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String, nullable=True)  # auto_system or admin:<actor>
