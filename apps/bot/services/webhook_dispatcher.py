"""
Inbound gateway callbacks: authenticate, parse, hand to the engine
"""
import logging
from typing import Dict, Optional

from .exceptions import AuthenticationError, NotFoundError
from .gateway import PaymentGateway

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    def __init__(self, gateways: Dict[str, PaymentGateway], engine):
        self.gateways = gateways
        self.engine = engine

    def signature_header(self, gateway_name: str) -> str:
        return self._gateway(gateway_name).signature_header

    def _gateway(self, gateway_name: str) -> PaymentGateway:
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            raise NotFoundError(f"Unknown gateway {gateway_name!r}")
        return gateway

    async def dispatch(self, gateway_name: str, raw_body: bytes, signature: Optional[str]) -> bool:
        """Returns True when the event changed state, False when it was ignored.

        Raises AuthenticationError before anything is parsed or written when
        the signature does not match.
        """
        gateway = self._gateway(gateway_name)
        if not gateway.verify_webhook_signature(raw_body, signature):
            logger.error(f"Invalid {gateway_name} webhook signature, request rejected")
            raise AuthenticationError(f"Invalid {gateway_name} webhook signature")

        try:
            event = gateway.parse_webhook(raw_body)
        except ValueError as e:
            logger.error(f"Malformed {gateway_name} webhook body ignored: {e}")
            return False

        logger.info(f"{gateway_name} webhook {event.event_type} for charge {event.charge_id}")
        return await self.engine.reconcile(event)
