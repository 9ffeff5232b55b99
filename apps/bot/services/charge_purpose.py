"""
Tagged charge metadata stored with each Payment and sent to the gateway
"""
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class InitialSubscription(BaseModel):
    kind: Literal["initial_subscription"] = "initial_subscription"
    telegram_id: int
    save_instrument: bool = False

    def description(self, period_days: int) -> str:
        return f"Подписка на закрытый канал на {period_days} дней"


class RecurringCharge(BaseModel):
    kind: Literal["recurring_charge"] = "recurring_charge"
    telegram_id: int
    payment_method_id: str

    def description(self, period_days: int) -> str:
        return f"Автопродление подписки на {period_days} дней"


ChargePurpose = Annotated[Union[InitialSubscription, RecurringCharge], Field(discriminator="kind")]

_purpose_adapter = TypeAdapter(ChargePurpose)


def gateway_metadata(purpose: Union[InitialSubscription, RecurringCharge], order_id: Optional[str] = None) -> dict:
    metadata = purpose.model_dump()
    if order_id:
        metadata["order_id"] = order_id
    return metadata


def load_purpose(data: Optional[dict]) -> Optional[Union[InitialSubscription, RecurringCharge]]:
    if not data:
        return None
    return _purpose_adapter.validate_python(data)
