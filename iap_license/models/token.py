"""Bearer token model."""

from datetime import datetime

from pydantic import Field

from iap_license.models.entity import TableEntity


class TokenRecord(TableEntity):
    """Token row keyed by the token value itself."""

    pro_order_id: str = Field(..., min_length=1, description="User key the token authenticates as")
    time_expired: datetime = Field(..., description="Absolute expiry (UTC)")

    @property
    def token(self) -> str:
        return self.row_key

    def remaining_seconds(self, now: datetime) -> float:
        return (self.time_expired - now).total_seconds()

    def is_live(self, now: datetime) -> bool:
        return self.time_expired > now
