from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NewServiceOrder(BaseModel):
    initial_date: datetime
    delivery_declaration: str
    client_id: int
    problem: str

    @field_validator("initial_date")
    @classmethod
    def not_in_past(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value < datetime.now(timezone.utc):
            raise ValueError("initial_date must not be in the past")
        return value


class CreateServiceOrderReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_order: NewServiceOrder = Field(alias="serviceOrder")


class ItemReq(BaseModel):
    item_id: int
    amount: int = Field(gt=0)


class ServiceOrderUpdate(BaseModel):
    id: int
    status: Literal["inProgress", "completed"]
    final_date: Optional[datetime] = None
    return_declaration: Optional[str] = None
    hours: Optional[int] = None
    items: Optional[List[ItemReq]] = None


class UpdateServiceOrderReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_order: ServiceOrderUpdate = Field(alias="serviceOrder")


StatusFilter = Literal["Received", "inProgress", "completed", "delivered"]
