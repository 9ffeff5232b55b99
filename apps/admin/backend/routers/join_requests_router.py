from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from apps.bot.services.exceptions import InvalidStateError, NotFoundError
from apps.bot.services.factory import Services
from shared.models.channel_request import JoinRequestStatus
from .dependencies import get_services

router = APIRouter()


class JoinRequestResponse(BaseModel):
    id: int
    telegram_id: int
    chat_id: int
    chat_title: Optional[str] = None
    username: Optional[str] = None
    status: str
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None

    class Config:
        from_attributes = True


class DecisionRequest(BaseModel):
    actor: str = "admin"


@router.get("/", response_model=List[JoinRequestResponse])
async def list_join_requests(
    status: Optional[JoinRequestStatus] = Query(JoinRequestStatus.PENDING),
    limit: int = Query(100, ge=1, le=500),
    services: Services = Depends(get_services)
):
    return await services.gatekeeper.list_requests(status, limit)


async def _decide(request_id: int, approve: bool, actor: str, services: Services):
    gatekeeper = services.gatekeeper
    try:
        if approve:
            return await gatekeeper.approve_request(request_id, actor)
        return await gatekeeper.decline_request(request_id, actor)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Join request not found")
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{request_id}/approve", response_model=JoinRequestResponse)
async def approve_join_request(request_id: int, body: Optional[DecisionRequest] = None, services: Services = Depends(get_services)):
    return await _decide(request_id, True, body.actor if body else "admin", services)


@router.post("/{request_id}/decline", response_model=JoinRequestResponse)
async def decline_join_request(request_id: int, body: Optional[DecisionRequest] = None, services: Services = Depends(get_services)):
    return await _decide(request_id, False, body.actor if body else "admin", services)
