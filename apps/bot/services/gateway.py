"""
Uniform contract over the payment gateways and failure classification
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from shared.models.payment import PaymentStatus
from .exceptions import GatewayError, InstrumentFatalError, TransientError

logger = logging.getLogger(__name__)

# Gateway reason codes attributable to the stored instrument itself
INSTRUMENT_FATAL_CODES = frozenset({
    "card_expired",
    "insufficient_funds",
    "payment_method_restricted",
    "payment_method_not_found",
    "permission_revoked",
    "invalid_card_number",
    "invalid_csc",
    "country_forbidden",
    "fraud_suspected",
})

# Used only when the gateway gives no structured code
_FATAL_MESSAGE_MARKERS = ("blocked", "expired", "insufficient", "not found")


@dataclass
class InstrumentInfo:
    instrument_id: str
    type: str = "card"
    masked: Optional[str] = None
    saved: bool = False


@dataclass
class ChargeResult:
    charge_id: str
    status: PaymentStatus
    amount: Decimal
    confirmation_url: Optional[str] = None
    instrument: Optional[InstrumentInfo] = None
    failure_code: Optional[str] = None


@dataclass
class GatewayEvent:
    """Verified webhook payload reduced to what reconciliation needs"""
    gateway: str
    event_type: str
    charge_id: Optional[str]
    status: Optional[PaymentStatus]
    instrument: Optional[InstrumentInfo] = None
    failure_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.charge_id is not None and self.status is not None and self.status.is_terminal


class PaymentGateway(ABC):
    name: str = ""
    supports_saved_instruments: bool = False
    requires_receipt_email: bool = False
    signature_header: str = "X-Webhook-Signature"

    def __init__(self, webhook_secret: str):
        self._webhook_secret = webhook_secret

    @abstractmethod
    async def create_charge(
        self,
        amount: Decimal,
        description: str,
        metadata: Dict[str, Any],
        save_instrument: bool = False,
        email: Optional[str] = None,
    ) -> ChargeResult:
        ...

    @abstractmethod
    async def create_charge_with_instrument(
        self,
        instrument_id: str,
        amount: Decimal,
        description: str,
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        ...

    @abstractmethod
    async def get_charge(self, charge_id: str) -> ChargeResult:
        ...

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> GatewayEvent:
        ...

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return verify_hmac_signature(raw_body, signature, self._webhook_secret)

    async def close(self):
        pass


def verify_hmac_signature(payload: bytes, signature: Optional[str], secret_key: str) -> bool:
    """HMAC-SHA256 hex digest of the raw body, constant-time compare"""
    if not signature or not secret_key:
        return False
    try:
        expected_signature = hmac.new(
            secret_key.encode("utf-8"),
            payload,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(signature.strip().lower(), expected_signature)
    except Exception as e:
        logger.error(f"Signature verification failed: {e}")
        return False


def sign_payload(payload: bytes, secret_key: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def classify_failure(error: GatewayError) -> GatewayError:
    """Map a gateway failure onto InstrumentFatalError or TransientError.

    Structured codes win; HTTP status comes next; message substrings are the
    last resort. Anything unrecognised is transient so a card is never
    disabled on a guess.
    """
    if isinstance(error, (InstrumentFatalError, TransientError)):
        return error

    kwargs = dict(http_status=error.http_status, code=error.code, gateway=error.gateway)

    if error.code:
        if error.code in INSTRUMENT_FATAL_CODES:
            return InstrumentFatalError(error.message, **kwargs)
        return TransientError(error.message, **kwargs)

    status = error.http_status
    if status is None or status >= 500 or status == 429:
        return TransientError(error.message, **kwargs)
    if status == 404:
        return InstrumentFatalError(error.message, **kwargs)

    message = (error.message or "").lower()
    if any(marker in message for marker in _FATAL_MESSAGE_MARKERS):
        return InstrumentFatalError(error.message, **kwargs)
    return TransientError(error.message, **kwargs)


def classify_cancellation(result: ChargeResult, gateway: str) -> GatewayError:
    """Classify a charge the gateway cancelled (as opposed to rejected outright)"""
    reason = result.failure_code
    error = GatewayError(
        f"Charge {result.charge_id} cancelled: {reason or 'no reason given'}",
        code=reason,
        gateway=gateway,
    )
    if not reason:
        return TransientError(error.message, gateway=gateway)
    return classify_failure(error)
