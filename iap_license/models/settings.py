"""Service settings and product catalog models.

Models loaded from config/license.yaml.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ProductType(str, Enum):
    """How a product's entitlement behaves."""

    CONSUMABLE = "consumable"  # Depletable scan quota
    NON_CONSUMABLE = "non_consumable"  # One-time unlock
    SUBSCRIPTION = "subscription"  # Recurring, verified with lifecycle state


class ProductDefinition(BaseModel):
    """Product definition from configuration."""

    id: str = Field(..., min_length=1, description="Play Console product ID")
    type: ProductType = Field(..., description="Product type")
    title: str = Field(default="", description="Human-readable title")
    scans_per_unit: int = Field(default=0, ge=0, description="Scans granted per purchased unit")
    grants_pro: bool = Field(default=False, description="Whether the product unlocks pro features")

    @model_validator(mode="after")
    def _consumables_grant_scans(self) -> "ProductDefinition":
        if self.type == ProductType.CONSUMABLE and self.scans_per_unit <= 0:
            raise ValueError(f"Consumable product '{self.id}' must grant scans_per_unit > 0")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "id": "ocr.calls",
                "type": "consumable",
                "title": "Receipt scans",
                "scans_per_unit": 30,
                "grants_pro": False,
            }
        }


class ServiceSettings(BaseModel):
    """Identity of the app whose purchases this service accepts."""

    package_name: str = Field(..., min_length=1, description="Expected Android package name")
    tenant: str = Field(default="DivisiBill", min_length=1, description="Partition for all tables")
    debug: bool = Field(default=False, description="Debug mode (debug tables, test order id)")


class TokenSettings(BaseModel):
    lifetime_seconds: int = Field(default=60, gt=0, description="Bearer token lifetime")
    renew_window_seconds: int = Field(
        default=5, ge=0, description="Remaining life under which a token is rotated"
    )
    length: int = Field(default=50, ge=32, description="Generated token length")


class LedgerSettings(BaseModel):
    max_attempts: int = Field(
        default=5, ge=1, description="Attempts for optimistic-concurrency writes and consolidation"
    )


class StorageSettings(BaseModel):
    """Table storage backend."""

    backend: str = Field(default="memory", pattern="^(memory|sql)$", description="memory or sql")
    url: str = Field(
        default="sqlite:///data/divisibill.db", description="SQLAlchemy database URL for the sql backend"
    )
    table_prefix: str = Field(default="DivisiBill", description="Prefix for table names")


class VerifierSettings(BaseModel):
    """Upstream billing verifier (Android Publisher API)."""

    base_url: str = Field(default="https://androidpublisher.googleapis.com")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-call timeout")
    credential_env: str = Field(
        default="PLAY_CREDENTIAL_B64",
        description="Environment variable holding the base64 service-account JSON",
    )
    test_order_id: Optional[str] = Field(
        default="Fake-OrderId", description="Order id accepted without upstream call in debug mode"
    )


class HeaderSettings(BaseModel):
    token: str = Field(default="divisibill-token")
    purchase: str = Field(default="divisibill-android-purchase")


class LicenseConfig(BaseModel):
    """Complete license.yaml configuration."""

    service: ServiceSettings
    products: list[ProductDefinition] = Field(default_factory=list)
    tokens: TokenSettings = Field(default_factory=TokenSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    verifier: VerifierSettings = Field(default_factory=VerifierSettings)
    headers: HeaderSettings = Field(default_factory=HeaderSettings)
