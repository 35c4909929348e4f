"""Purchase claim sent by the app (Play Billing Purchase, serialized as JSON)."""

import json
from typing import Any, Optional
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from iap_license.exceptions import InvalidClaimError

REQUIRED_FIELDS = ("order_id", "product_id", "package_name", "purchase_token")


class PurchaseClaim(BaseModel):
    """Purchase details as reported by the client.

    Nothing here is trusted until the ledger and the upstream verifier agree.
    JSON keys are matched case-insensitively (``orderId``, ``OrderId`` and
    ``orderid`` are the same field).
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "example": {
                "packageName": "com.autoplus.divisibill",
                "orderId": "GPA.3312-5567-0923-41125",
                "productId": "ocr.calls",
                "purchaseToken": "opaque-play-token",
                "obfuscatedAccountId": "acct-7f3a",
                "quantity": 1,
                "acknowledged": True,
            }
        },
    )

    package_name: Optional[str] = Field(None, alias="packageName")
    order_id: Optional[str] = Field(None, alias="orderId")
    product_id: Optional[str] = Field(None, alias="productId")
    purchase_token: Optional[str] = Field(None, alias="purchaseToken")
    obfuscated_account_id: Optional[str] = Field(None, alias="obfuscatedAccountId")
    purchase_time: int = Field(default=0, alias="purchaseTime")
    purchase_state: int = Field(default=0, alias="purchaseState")
    quantity: int = Field(default=1, alias="quantity")
    acknowledged: bool = Field(default=False, alias="acknowledged")

    @model_validator(mode="before")
    @classmethod
    def _match_keys_case_insensitively(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        by_lower = {}
        for name, field in cls.model_fields.items():
            by_lower[name.lower()] = field.alias or name
            if field.alias:
                by_lower[field.alias.lower()] = field.alias
        return {by_lower.get(str(key).lower(), key): value for key, value in data.items()}

    @classmethod
    def from_json(cls, raw: str, unescape: bool = False) -> "PurchaseClaim":
        """Parse a claim from JSON text.

        Args:
            raw: JSON object text
            unescape: URL-unescape first (header transport)

        Raises:
            InvalidClaimError: If the text is not a JSON object matching the claim shape
        """
        text = unquote(raw) if unescape else raw
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as e:
            raise InvalidClaimError(f"Purchase claim is not valid JSON: {e}")
        if not isinstance(payload, dict):
            raise InvalidClaimError("Purchase claim must be a JSON object")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidClaimError(f"Purchase claim has invalid fields: {e}")

    def missing_fields(self) -> list[str]:
        """Names of required fields that are absent or blank."""
        return [name for name in REQUIRED_FIELDS if not (getattr(self, name) or "").strip()]

    @property
    def user_key(self) -> str:
        """Identity a verified claim authenticates as."""
        return self.obfuscated_account_id or self.order_id or ""
