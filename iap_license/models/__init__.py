"""Pydantic models for settings, ledger rows, claims and API responses."""

# Settings
from .settings import (
    HeaderSettings,
    LedgerSettings,
    LicenseConfig,
    ProductDefinition,
    ProductType,
    ServiceSettings,
    StorageSettings,
    TokenSettings,
    VerifierSettings,
)

# Table rows
from .entity import TableEntity
from .purchase import PurchaseRecord, ScanCount
from .token import TokenRecord
from .stored_item import (
    MEAL_STORAGE,
    PERSON_LIST_STORAGE,
    VENUE_LIST_STORAGE,
    ImageBlob,
    StorageConfig,
    StoredItem,
)

# Claims and verification
from .claim import PurchaseClaim
from .verification import SubscriptionLifecycle, VerifiedPurchase
from .authorization import AuthorizationResult, AuthorizationStage, DenialReason

# Scans
from .scan import FormElement, OrderLine, ScannedBill

# API responses
from .api_response import (
    ErrorResponse,
    RecordPurchaseResponse,
    StoredItemSummary,
    VerifyResponse,
    VersionResponse,
)

__all__ = [
    # Settings
    "HeaderSettings",
    "LedgerSettings",
    "LicenseConfig",
    "ProductDefinition",
    "ProductType",
    "ServiceSettings",
    "StorageSettings",
    "TokenSettings",
    "VerifierSettings",
    # Table rows
    "TableEntity",
    "PurchaseRecord",
    "ScanCount",
    "TokenRecord",
    "MEAL_STORAGE",
    "PERSON_LIST_STORAGE",
    "VENUE_LIST_STORAGE",
    "ImageBlob",
    "StorageConfig",
    "StoredItem",
    # Claims and verification
    "PurchaseClaim",
    "SubscriptionLifecycle",
    "VerifiedPurchase",
    "AuthorizationResult",
    "AuthorizationStage",
    "DenialReason",
    # Scans
    "FormElement",
    "OrderLine",
    "ScannedBill",
    # API responses
    "ErrorResponse",
    "RecordPurchaseResponse",
    "StoredItemSummary",
    "VerifyResponse",
    "VersionResponse",
]
