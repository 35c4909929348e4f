"""Purchase verifier - asks Google Play whether a purchase token is genuine.

Calls the Android Publisher API v3:
- GET /androidpublisher/v3/applications/{packageName}/purchases/products/{productId}/tokens/{token}
- GET /androidpublisher/v3/applications/{packageName}/purchases/subscriptionsv2/tokens/{token}

and normalizes either response into a VerifiedPurchase. Every failure to get
an answer (timeout, transport error, server error, missing credentials) is an
UpstreamUnavailableError; callers treat it as "not verified".
"""

import base64
import json
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from iap_license.logging_config import get_logger
from iap_license.models import SubscriptionLifecycle, VerifiedPurchase, VerifierSettings
from iap_license.utils.token_generator import mask_token

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"


class VerificationError(Exception):
    """Raised when the store does not vouch for a purchase."""

    pass


class UpstreamUnavailableError(VerificationError):
    """Raised when the store could not be asked (timeout, transport, 5xx, credentials)."""

    pass


def build_session(credential_b64: Optional[str]) -> requests.Session:
    """HTTP session for the publisher API.

    Args:
        credential_b64: Base64 service-account JSON. Without it a plain session is
            returned, which only works against an emulator.

    Raises:
        UpstreamUnavailableError: If the credential cannot be decoded
    """
    if not credential_b64:
        logger.warning("play_credential_missing", message="Using unauthenticated session")
        return requests.Session()
    try:
        info = json.loads(base64.b64decode(credential_b64).decode("utf-8"))
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=[ANDROID_PUBLISHER_SCOPE]
        )
    except (ValueError, TypeError) as e:
        raise UpstreamUnavailableError(f"Play service-account credential is unusable: {e}") from e
    return AuthorizedSession(credentials)


class PurchaseVerifier:
    """Adapter over the Android Publisher purchases API.

    Args:
        settings: Base URL, timeout and debug test order id
        session: HTTP session (an AuthorizedSession in production)
        debug: Accept ``settings.test_order_id`` without calling upstream
    """

    def __init__(
        self,
        settings: VerifierSettings,
        session: Optional[requests.Session] = None,
        debug: bool = False,
        has_credential: bool = False,
    ):
        self._settings = settings
        self._session = session if session is not None else requests.Session()
        self._debug = debug
        self._has_credential = has_credential

    @classmethod
    def from_credential(
        cls, settings: VerifierSettings, credential_b64: Optional[str], debug: bool = False
    ) -> "PurchaseVerifier":
        return cls(
            settings,
            session=build_session(credential_b64),
            debug=debug,
            has_credential=bool(credential_b64),
        )

    @property
    def has_credential(self) -> bool:
        return self._has_credential

    def verify(
        self,
        package_name: str,
        product_id: str,
        purchase_token: str,
        is_subscription: bool,
        order_id: Optional[str] = None,
    ) -> VerifiedPurchase:
        """Confirm a purchase with the store.

        Args:
            package_name: Android package name
            product_id: Product or subscription id
            purchase_token: Provider proof token
            is_subscription: Use the subscriptions API
            order_id: Claimed order id (only used to recognise the debug test order)

        Returns:
            VerifiedPurchase

        Raises:
            VerificationError: If the store does not know the purchase
            UpstreamUnavailableError: If the store could not be reached
        """
        if self._debug and self._settings.test_order_id and order_id == self._settings.test_order_id:
            logger.info("test_order_accepted", order_id=order_id, product_id=product_id)
            return VerifiedPurchase(
                order_id=order_id,
                acknowledged=True,
                lifecycle_state=SubscriptionLifecycle.ACTIVE if is_subscription else None,
                is_test_order=True,
            )

        base = self._settings.base_url.rstrip("/")
        package = quote(package_name, safe="")
        token = quote(purchase_token, safe="")
        if is_subscription:
            url = f"{base}/androidpublisher/v3/applications/{package}/purchases/subscriptionsv2/tokens/{token}"
        else:
            product = quote(product_id, safe="")
            url = f"{base}/androidpublisher/v3/applications/{package}/purchases/products/{product}/tokens/{token}"

        logger.info(
            "upstream_verify_request",
            package_name=package_name,
            product_id=product_id,
            is_subscription=is_subscription,
            purchase_token=mask_token(purchase_token),
        )

        payload = self._get(url)
        verified = (
            self._normalize_subscription(payload) if is_subscription else self._normalize_product(payload)
        )
        logger.info(
            "upstream_verify_success",
            order_id=verified.order_id,
            acknowledged=verified.acknowledged,
            lifecycle_state=verified.lifecycle_state.value if verified.lifecycle_state else None,
            purchase_state=verified.purchase_state,
        )
        return verified

    def _get(self, url: str) -> Dict[str, Any]:
        try:
            response = self._session.get(url, timeout=self._settings.timeout_seconds)
        except requests.Timeout as e:
            logger.error("upstream_verify_timeout", timeout_seconds=self._settings.timeout_seconds)
            raise UpstreamUnavailableError(f"Play verification timed out: {e}") from e
        except (requests.RequestException, google_auth_exceptions.GoogleAuthError) as e:
            logger.error("upstream_verify_transport_error", error=str(e), error_type=type(e).__name__)
            raise UpstreamUnavailableError(f"Play verification failed: {e}") from e

        status = response.status_code
        if status in (400, 404, 410):
            logger.warning("upstream_purchase_not_found", status_code=status)
            raise VerificationError(f"Play does not recognise this purchase (HTTP {status})")
        if status >= 400:
            logger.error("upstream_verify_http_error", status_code=status)
            raise UpstreamUnavailableError(f"Play verification returned HTTP {status}")

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(f"Play verification returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError("Play verification returned an unexpected body")
        return payload

    @staticmethod
    def _normalize_product(payload: Dict[str, Any]) -> VerifiedPurchase:
        order_id = payload.get("orderId")
        if not order_id:
            raise VerificationError("Play product purchase has no orderId")
        return VerifiedPurchase(
            order_id=order_id,
            acknowledged=payload.get("acknowledgementState") == 1,
            account_id=payload.get("obfuscatedExternalAccountId"),
            purchase_state=payload.get("purchaseState", 0),
        )

    @staticmethod
    def _normalize_subscription(payload: Dict[str, Any]) -> VerifiedPurchase:
        order_id = payload.get("latestOrderId")
        if not order_id:
            line_items = payload.get("lineItems") or []
            if line_items:
                order_id = line_items[0].get("latestSuccessfulOrderId")
        if not order_id:
            raise VerificationError("Play subscription purchase has no order id")
        identifiers = payload.get("externalAccountIdentifiers") or {}
        return VerifiedPurchase(
            order_id=order_id,
            acknowledged=payload.get("acknowledgementState") == "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED",
            account_id=identifiers.get("obfuscatedExternalAccountId"),
            lifecycle_state=SubscriptionLifecycle.parse(payload.get("subscriptionState")),
        )
