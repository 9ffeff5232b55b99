"""
YooKassa card gateway: one-off charges, charges against a saved card, webhooks
"""
import json
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from shared.models.payment import PaymentStatus
from .exceptions import GatewayError, TransientError
from .gateway import ChargeResult, GatewayEvent, InstrumentInfo, PaymentGateway

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "waiting_for_capture": PaymentStatus.PENDING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
}

_EVENT_STATUS_MAP = {
    "payment.succeeded": PaymentStatus.SUCCEEDED,
    "payment.canceled": PaymentStatus.CANCELLED,
}


class YooKassaGateway(PaymentGateway):
    name = "yookassa"
    supports_saved_instruments = True
    requires_receipt_email = True

    def __init__(
        self,
        shop_id: str,
        secret_key: str,
        webhook_secret: str,
        api_url: str = "https://api.yookassa.ru/v3",
        return_url: str = "https://t.me",
        currency: str = "RUB",
        timeout: float = 15.0,
        receipt_required: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(webhook_secret)
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.return_url = return_url
        self.currency = currency
        self.timeout = timeout
        self.requires_receipt_email = receipt_required
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            auth=(self.shop_id, self.secret_key),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {}
        if method == "POST":
            # Retried requests with the same key are not charged twice
            headers["Idempotence-Key"] = str(uuid.uuid4())

        try:
            async with self._client() as client:
                response = await client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"YooKassa timeout on {method} {path}: {e}")
            raise TransientError("YooKassa request timed out", gateway=self.name)
        except httpx.RequestError as e:
            logger.error(f"YooKassa network error on {method} {path}: {e}")
            raise TransientError(f"YooKassa network error: {e}", gateway=self.name)

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"description": response.text[:500]}
            logger.error(f"YooKassa error {response.status_code} on {method} {path}: {body}")

            code = body.get("code")
            if body.get("parameter") == "payment_method_id":
                code = "payment_method_not_found"
            raise GatewayError(
                body.get("description") or "YooKassa request failed",
                http_status=response.status_code,
                code=code,
                gateway=self.name,
            )

        return response.json()

    def _amount(self, amount: Decimal) -> Dict[str, str]:
        return {"value": f"{Decimal(amount):.2f}", "currency": self.currency}

    def _receipt(self, amount: Decimal, description: str, email: Optional[str]) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        return {
            "customer": {"email": email},
            "items": [
                {
                    "description": description[:128],
                    "quantity": "1.00",
                    "amount": self._amount(amount),
                    "vat_code": 1,
                    "payment_mode": "full_payment",
                    "payment_subject": "service",
                }
            ],
        }

    @staticmethod
    def _metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
        # YooKassa accepts flat string values only
        return {key: str(value) for key, value in metadata.items() if value is not None}

    async def create_charge(
        self,
        amount: Decimal,
        description: str,
        metadata: Dict[str, Any],
        save_instrument: bool = False,
        email: Optional[str] = None,
    ) -> ChargeResult:
        payload = {
            "amount": self._amount(amount),
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": self.return_url},
            "description": description[:128],
            "metadata": self._metadata(metadata),
            "save_payment_method": save_instrument,
        }
        receipt = self._receipt(amount, description, email)
        if receipt:
            payload["receipt"] = receipt

        data = await self._request("POST", "/payments", payload)
        logger.info(f"YooKassa payment created: {data.get('id')} status={data.get('status')}")
        return self._to_charge_result(data)

    async def create_charge_with_instrument(
        self,
        instrument_id: str,
        amount: Decimal,
        description: str,
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        payload = {
            "amount": self._amount(amount),
            "capture": True,
            "payment_method_id": instrument_id,
            "description": description[:128],
            "metadata": self._metadata(metadata),
        }
        receipt = self._receipt(amount, description, email)
        if receipt:
            payload["receipt"] = receipt

        data = await self._request("POST", "/payments", payload)
        logger.info(f"YooKassa recurring payment created: {data.get('id')} status={data.get('status')}")
        return self._to_charge_result(data)

    async def get_charge(self, charge_id: str) -> ChargeResult:
        data = await self._request("GET", f"/payments/{charge_id}")
        return self._to_charge_result(data)

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent:
        try:
            notification = json.loads(raw_body)
        except ValueError as e:
            raise ValueError(f"Malformed YooKassa notification: {e}")
        if not isinstance(notification, dict):
            raise ValueError("Malformed YooKassa notification: not an object")

        # Older notifications carried the event name in "type"
        event_type = notification.get("event") or notification.get("type") or ""
        payment = notification.get("object") or {}
        return GatewayEvent(
            gateway=self.name,
            event_type=event_type,
            charge_id=payment.get("id"),
            status=_EVENT_STATUS_MAP.get(event_type),
            instrument=self._instrument(payment),
            failure_code=(payment.get("cancellation_details") or {}).get("reason"),
        )

    @staticmethod
    def _instrument(data: Dict[str, Any]) -> Optional[InstrumentInfo]:
        method = data.get("payment_method") or {}
        if not method.get("id"):
            return None
        card = method.get("card") or {}
        masked = f"**** **** **** {card['last4']}" if card.get("last4") else method.get("title")
        return InstrumentInfo(
            instrument_id=method["id"],
            type=method.get("type") or "card",
            masked=masked,
            saved=bool(method.get("saved")),
        )

    def _to_charge_result(self, data: Dict[str, Any]) -> ChargeResult:
        amount = (data.get("amount") or {}).get("value") or "0"
        return ChargeResult(
            charge_id=data["id"],
            status=_STATUS_MAP.get(data.get("status"), PaymentStatus.PENDING),
            amount=Decimal(str(amount)),
            confirmation_url=(data.get("confirmation") or {}).get("confirmation_url"),
            instrument=self._instrument(data),
            failure_code=(data.get("cancellation_details") or {}).get("reason"),
        )
