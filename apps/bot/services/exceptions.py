"""
Error taxonomy shared by the subscription engine, gateways and the bot/HTTP layers
"""
from typing import Optional


class PaywallError(Exception):
    """Base class for every error raised by the paywall services"""


class ValidationError(PaywallError):
    """Required user input is missing or malformed (e.g. receipt email)"""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Missing required field: {field}")


class GatewayError(PaywallError):
    """Payment gateway answered with a non-2xx status or could not be reached"""

    def __init__(self, message: str, http_status: Optional[int] = None, code: Optional[str] = None, gateway: Optional[str] = None):
        self.message = message
        self.http_status = http_status
        self.code = code
        self.gateway = gateway
        super().__init__(message)

    def __str__(self):
        parts = [self.message]
        if self.http_status is not None:
            parts.append(f"status={self.http_status}")
        if self.code:
            parts.append(f"code={self.code}")
        return " ".join(parts)


class TransientError(GatewayError):
    """Network, timeout or 5xx failure; the charge is retried next cycle"""


class InstrumentFatalError(GatewayError):
    """Failure caused by the stored instrument itself; auto-pay is disabled"""


class AuthenticationError(PaywallError):
    """Webhook signature did not match the gateway's shared secret"""


class InvalidStateError(PaywallError):
    """Operation on a payment or join request that is already terminal"""


class NotFoundError(PaywallError):
    """Referenced user, payment or join request does not exist"""
