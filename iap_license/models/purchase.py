"""Purchase ledger models.

A PurchaseRecord is created once per order id and never deleted; only its
scan quota, purchase token (legacy backfill) and last-use time change.
"""

from datetime import datetime
from enum import IntEnum
from typing import ClassVar, Optional, Tuple

from pydantic import Field

from iap_license.models.entity import TableEntity


class ScanCount(IntEnum):
    """Negative sentinels returned by QuotaLedger.get_scans."""

    NOT_FOUND = -1  # No record for the order id
    TOKEN_CONFLICT = -2  # Record exists but is bound to a different purchase token


class PurchaseRecord(TableEntity):
    """Ledger row for one purchase, keyed by order id."""

    # A purchase token proves exactly one order
    unique_fields: ClassVar[Tuple[str, ...]] = ("purchase_token",)

    product_id: str = Field(..., min_length=1, description="Product ID")
    purchase_token: str = Field(default="", description="Provider proof token, empty on legacy rows")
    obfuscated_account_id: str = Field(default="", description="Opaque purchasing-account id")
    scans_left: int = Field(default=0, ge=0, description="Remaining consumable quota")
    time_created: datetime = Field(..., description="When the purchase was recorded")
    time_used: Optional[datetime] = Field(None, description="Last successful use")

    @property
    def order_id(self) -> str:
        return self.row_key

    class Config:
        json_schema_extra = {
            "example": {
                "partition_key": "DivisiBill",
                "row_key": "GPA.3312-5567-0923-41125",
                "product_id": "ocr.calls",
                "purchase_token": "opaque-play-token",
                "obfuscated_account_id": "acct-7f3a",
                "scans_left": 30,
                "time_created": "2024-03-01T12:00:00Z",
            }
        }
