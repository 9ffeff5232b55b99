"""
Payment webhook router for handling external payment notifications
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from apps.bot.services.exceptions import AuthenticationError, NotFoundError
from apps.bot.services.factory import Services
from .dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{gateway}")
async def payment_webhook(gateway: str, request: Request, services: Services = Depends(get_services)):
    """Accept a gateway callback; 200 both when processed and when ignored"""
    dispatcher = services.dispatcher
    try:
        header = dispatcher.signature_header(gateway)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Unknown gateway: {gateway}")

    raw_body = await request.body()
    try:
        processed = await dispatcher.dispatch(gateway, raw_body, request.headers.get(header))
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except Exception as e:
        logger.error(f"{gateway} webhook processing error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing error")

    return {"status": "ok", "processed": processed}
