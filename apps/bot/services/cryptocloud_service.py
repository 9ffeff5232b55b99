"""
CryptoCloud invoice gateway
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import httpx

from shared.models.payment import PaymentStatus
from .exceptions import GatewayError, TransientError
from .gateway import ChargeResult, GatewayEvent, PaymentGateway

logger = logging.getLogger(__name__)

_INVOICE_STATUS_MAP = {
    "created": PaymentStatus.PENDING,
    "partial": PaymentStatus.PENDING,
    "paid": PaymentStatus.SUCCEEDED,
    "overpaid": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
}

_POSTBACK_STATUS_MAP = {
    "success": PaymentStatus.SUCCEEDED,
    "paid": PaymentStatus.SUCCEEDED,
    "overpaid": PaymentStatus.SUCCEEDED,
    "confirmed": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "failed": PaymentStatus.CANCELLED,
}


def normalize_invoice_id(invoice_id: Optional[str]) -> Optional[str]:
    """Postbacks send the bare id, the API returns it as INV-<id>"""
    if not invoice_id:
        return None
    invoice_id = str(invoice_id).strip()
    if not invoice_id.upper().startswith("INV-"):
        invoice_id = f"INV-{invoice_id}"
    return invoice_id


class CryptoCloudGateway(PaymentGateway):
    name = "cryptocloud"
    supports_saved_instruments = False
    requires_receipt_email = False
    signature_header = "X-Signature"

    def __init__(
        self,
        api_key: str,
        shop_id: str,
        secret: str,
        api_url: str = "https://api.cryptocloud.plus/v2",
        currency: str = "RUB",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(secret)
        self.api_key = api_key
        self.shop_id = shop_id
        self.api_url = api_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}{path}",
                    headers={"Authorization": f"Token {self.api_key}"},
                    json=payload
                )
        except httpx.TimeoutException as e:
            logger.error(f"CryptoCloud timeout on {path}: {e}")
            raise TransientError("CryptoCloud request timed out", gateway=self.name)
        except httpx.RequestError as e:
            logger.error(f"CryptoCloud network error on {path}: {e}")
            raise TransientError(f"CryptoCloud network error: {e}", gateway=self.name)

        try:
            data = response.json()
        except ValueError:
            data = {"status": "error", "result": response.text[:500]}

        if response.status_code >= 400 or data.get("status") != "success":
            logger.error(f"CryptoCloud error {response.status_code} on {path}: {data}")
            message = data.get("error") or data.get("result") or "CryptoCloud request failed"
            raise GatewayError(str(message), http_status=response.status_code, gateway=self.name)

        return data

    async def create_charge(
        self,
        amount: Decimal,
        description: str,
        metadata: Dict[str, Any],
        save_instrument: bool = False,
        email: Optional[str] = None,
    ) -> ChargeResult:
        payload = {
            "shop_id": self.shop_id,
            "amount": float(amount),
            "currency": self.currency,
            "order_id": metadata.get("order_id"),
            "add_fields": {"description": description},
        }
        if email:
            payload["email"] = email

        data = await self._post("/invoice/create", payload)
        result = data["result"]
        logger.info(f"CryptoCloud invoice created: {result.get('uuid')}")
        return ChargeResult(
            charge_id=normalize_invoice_id(result["uuid"]),
            status=PaymentStatus.PENDING,
            amount=Decimal(str(result.get("amount", amount))),
            confirmation_url=result.get("link"),
        )

    async def create_charge_with_instrument(
        self,
        instrument_id: str,
        amount: Decimal,
        description: str,
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> ChargeResult:
        raise GatewayError(
            "CryptoCloud does not support charges against stored instruments",
            code="instrument_unsupported",
            gateway=self.name,
        )

    async def get_charge(self, charge_id: str) -> ChargeResult:
        data = await self._post("/invoice/merchant/info", {"uuids": [charge_id]})
        invoices = data.get("result") or []
        if not invoices:
            raise GatewayError(f"Invoice {charge_id} not found", http_status=404, gateway=self.name)

        invoice = invoices[0]
        return ChargeResult(
            charge_id=normalize_invoice_id(invoice.get("uuid")) or charge_id,
            status=_INVOICE_STATUS_MAP.get(invoice.get("status"), PaymentStatus.PENDING),
            amount=Decimal(str(invoice.get("amount") or "0")),
            confirmation_url=invoice.get("link"),
        )

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent:
        # Postbacks arrive either as JSON or as a urlencoded form
        try:
            data = json.loads(raw_body)
        except ValueError:
            data = dict(parse_qsl(raw_body.decode("utf-8", errors="replace")))
        if not isinstance(data, dict) or not data:
            raise ValueError("Malformed CryptoCloud postback")

        status = str(data.get("status") or "").lower()
        return GatewayEvent(
            gateway=self.name,
            event_type=f"invoice.{status}" if status else "invoice.unknown",
            charge_id=normalize_invoice_id(data.get("uuid") or data.get("invoice_id")),
            status=_POSTBACK_STATUS_MAP.get(status),
        )
