"""HTTP response models."""

from typing import Optional

from pydantic import BaseModel, Field


class VerifyResponse(BaseModel):
    """Response for POST /verify."""

    scans_left: int = Field(..., ge=0, description="Remaining scans on the verified license")
    order_id: str = Field(..., description="Verified order id")

    class Config:
        json_schema_extra = {"example": {"scans_left": 30, "order_id": "GPA.3312-5567-0923-41125"}}


class RecordPurchaseResponse(BaseModel):
    recorded: bool = Field(..., description="Whether the purchase was recorded")
    order_id: str = Field(..., description="Order id")


class StoredItemSummary(BaseModel):
    """One entry of a CRUD enumeration."""

    name: str = Field(..., description="14 digit yyyymmddhhmmss item name")
    data_length: int = Field(..., ge=0)
    summary: Optional[str] = Field(None)
    has_remote_image: bool = Field(default=False)


class VersionResponse(BaseModel):
    service: str
    version: str
    debug: bool
    package_name: str
    storage_backend: str
    play_credential: str = Field(..., description="Present or Missing")
    scanner: str = Field(..., description="Present or Missing")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human readable message")
    function: Optional[str] = Field(None, description="Function that failed")
