from .user import User, UserStatus
from .payment import Payment, PaymentStatus
from .payment_method import PaymentMethod
from .channel_request import ChannelRequest, JoinRequestStatus
from .audit_log import AuditLog

__all__ = [
    "User",
    "UserStatus",
    "Payment",
    "PaymentStatus",
    "PaymentMethod",
    "ChannelRequest",
    "JoinRequestStatus",
    "AuditLog"
]
