from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class QRGenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["bin", "item_group"]
    targetID: UUID


class QRScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str


class UploadUrlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    folder: Literal["locations", "bins"]
    fileName: str
    fileType: Optional[str] = None
