"""Authorization decision models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AuthorizationStage(str, Enum):
    """Stages an authorization request moves through."""

    TOKEN_CHECK = "token_check"
    CLAIM_CHECK = "claim_check"
    UPSTREAM_VERIFY = "upstream_verify"
    AUTHORIZED = "authorized"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Why a request was not authorized."""

    NO_CREDENTIALS = "no_credentials"
    INVALID_CLAIM = "invalid_claim"
    WRONG_PACKAGE = "wrong_package"
    PRODUCT_NOT_ACCEPTED = "product_not_accepted"
    UNKNOWN_PURCHASE = "unknown_purchase"
    TOKEN_CONFLICT = "token_conflict"
    UPSTREAM_REJECTED = "upstream_rejected"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"

    @property
    def is_client_error(self) -> bool:
        """Whether the request itself was malformed (HTTP 400 rather than 401/403)."""
        return self in (DenialReason.INVALID_CLAIM, DenialReason.WRONG_PACKAGE)


class AuthorizationResult(BaseModel):
    """Outcome of authorizing one request."""

    authorized: bool = Field(..., description="Whether the caller may proceed")
    user_key: Optional[str] = Field(None, description="Identity the caller authenticated as")
    order_id: Optional[str] = Field(None, description="Order id of the claim, when one was used")
    product_id: Optional[str] = Field(None, description="Product id of the claim, when one was used")
    scans_left: Optional[int] = Field(None, description="Remaining scans on the claimed order")
    new_token: Optional[str] = Field(None, description="Bearer token to hand back to the client")
    via_token: bool = Field(default=False, description="Authorized by a bearer token alone")
    reason: Optional[DenialReason] = Field(None, description="Denial reason when not authorized")

    @classmethod
    def denied(cls, reason: DenialReason, order_id: Optional[str] = None) -> "AuthorizationResult":
        return cls(authorized=False, reason=reason, order_id=order_id)
