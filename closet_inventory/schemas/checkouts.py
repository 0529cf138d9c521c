from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_naive_local(value: datetime | None) -> datetime | None:
    """Convert zone-marked input to the naive server-local time the database holds."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class CheckoutLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: UUID
    quantity: int = Field(1, ge=1)


class CreateCheckoutDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerName: Optional[str] = None
    clubName: Optional[str] = None
    eventName: Optional[str] = None
    dueBackAt: Optional[datetime] = None
    notes: Optional[str] = None
    binID: Optional[UUID] = None
    lines: List[CheckoutLineDto] = []

    normalize_due_back = field_validator("dueBackAt")(to_naive_local)


class CheckInLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    checkoutID: UUID
    okQty: int = Field(0, ge=0)
    lostQty: int = Field(0, ge=0)
    brokenQty: int = Field(0, ge=0)
    usedQty: int = Field(0, ge=0)
    choice: Literal["ok", "lost", "broken"] = "ok"


class CheckInRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
    lines: List[CheckInLineDto] = []


class LossReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: Optional[UUID] = None
    quantity: int = 0
    issueType: Literal["lost", "broken"] = "lost"
    reportedBy: Optional[str] = None
    notes: Optional[str] = None


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerName: Optional[str] = None
    clubName: Optional[str] = None
    eventName: Optional[str] = None
    startAt: Optional[datetime] = None
    endAt: Optional[datetime] = None
    status: Literal["planned", "confirmed"] = "planned"
    notes: Optional[str] = None
    binID: Optional[UUID] = None
    lines: List[CheckoutLineDto] = []

    normalize_window = field_validator("startAt", "endAt")(to_naive_local)


class ReservationStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["planned", "confirmed", "cancelled", "fulfilled"]


class FulfillReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    dueBackAt: Optional[datetime] = None

    normalize_due_back = field_validator("dueBackAt")(to_naive_local)
