"""Normalized upstream verification result."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionLifecycle(str, Enum):
    """Subscription states reported by the Android Publisher subscriptionsv2 API."""

    UNSPECIFIED = "SUBSCRIPTION_STATE_UNSPECIFIED"
    PENDING = "SUBSCRIPTION_STATE_PENDING"
    ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"
    PAUSED = "SUBSCRIPTION_STATE_PAUSED"
    IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"
    ON_HOLD = "SUBSCRIPTION_STATE_ON_HOLD"
    CANCELED = "SUBSCRIPTION_STATE_CANCELED"
    EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"
    PENDING_PURCHASE_CANCELED = "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionLifecycle":
        try:
            return cls(value)
        except ValueError:
            return cls.UNSPECIFIED


# Canceled subscriptions stay entitled until expiry; the API reports EXPIRED afterwards.
ENTITLED_LIFECYCLES = frozenset(
    {
        SubscriptionLifecycle.ACTIVE,
        SubscriptionLifecycle.IN_GRACE_PERIOD,
    }
)


class VerifiedPurchase(BaseModel):
    """What the upstream store says about a purchase token."""

    order_id: str = Field(..., description="Canonical order id (latest order for subscriptions)")
    acknowledged: bool = Field(default=False, description="Whether the purchase was acknowledged")
    account_id: Optional[str] = Field(None, description="Obfuscated external account id")
    lifecycle_state: Optional[SubscriptionLifecycle] = Field(
        None, description="Subscription lifecycle; None for one-time products"
    )
    purchase_state: Optional[int] = Field(
        None, description="One-time product state (0=purchased, 1=canceled, 2=pending)"
    )
    is_test_order: bool = Field(default=False, description="Debug test order, no upstream call made")

    def is_entitled(self) -> bool:
        """Whether the purchase currently grants its entitlement."""
        if self.lifecycle_state is not None:
            return self.lifecycle_state in ENTITLED_LIFECYCLES
        return self.purchase_state in (None, 0)

    def matches_order(self, order_id: str) -> bool:
        """Whether the claimed order id belongs to this purchase.

        Subscription renewals report ``<order>..<n>`` as their latest order id.
        """
        return self.order_id == order_id or self.order_id.startswith(f"{order_id}..")
