from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class LocationUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    sortOrder: Optional[int] = None
    photoUrl: Optional[str] = None


class BinUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label: Optional[str] = None
    locationID: Optional[UUID] = None
    notes: Optional[str] = None
    photoUrl: Optional[str] = None


class ItemUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemGroupID: Optional[UUID] = None
    newGroupName: Optional[str] = None
    binID: Optional[UUID] = None
    quantityOnHand: Optional[int] = None
    unit: Optional[str] = None
    lowStockThreshold: Optional[int] = None
    notes: Optional[str] = None
