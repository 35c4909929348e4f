"""Authorizer - decides whether a request may proceed, and as whom.

A request carries a bearer token, a purchase claim, or both. The token is the
cheap path: a live token authorizes immediately. Otherwise the claim is
checked structurally, looked up in the quota ledger, and confirmed with the
upstream store. Both the ledger and the store have to agree.

Stage transitions:
    TOKEN_CHECK -> AUTHORIZED | CLAIM_CHECK
    CLAIM_CHECK -> DENIED | UPSTREAM_VERIFY
    UPSTREAM_VERIFY -> AUTHORIZED | DENIED
"""

from typing import Iterable, Optional, Tuple

from iap_license.exceptions import InvalidClaimError
from iap_license.logging_config import get_logger
from iap_license.models import (
    AuthorizationResult,
    AuthorizationStage,
    DenialReason,
    PurchaseClaim,
    ScanCount,
    VerifiedPurchase,
)
from iap_license.repositories.product_catalog import ProductCatalog
from iap_license.repositories.quota_ledger import QuotaLedger
from iap_license.repositories.token_store import TokenStore
from iap_license.services.purchase_verifier import (
    PurchaseVerifier,
    UpstreamUnavailableError,
    VerificationError,
)
from iap_license.state_logger import log_authorization_stage

logger = get_logger(__name__)


class InactivePurchaseError(VerificationError):
    """Raised when the store knows the purchase but it grants nothing right now."""

    pass


class Authorizer:
    """Orchestrates TokenStore, QuotaLedger and PurchaseVerifier.

    Args:
        token_store: Bearer tokens
        ledger: Purchase records and scan quota
        verifier: Upstream store adapter
        catalog: Product catalog (subscription vs product, pro vs consumable)
        package_name: The only Android package whose purchases are accepted
    """

    def __init__(
        self,
        token_store: TokenStore,
        ledger: QuotaLedger,
        verifier: PurchaseVerifier,
        catalog: ProductCatalog,
        package_name: str,
    ):
        self._token_store = token_store
        self._ledger = ledger
        self._verifier = verifier
        self._catalog = catalog
        self._package_name = package_name

    @staticmethod
    def parse_claim(raw: Optional[str], unescape: bool = True) -> Optional[PurchaseClaim]:
        """Parse a claim from header or form text; None when absent.

        Raises:
            InvalidClaimError: If the text is present but not a claim
        """
        if raw is None or not raw.strip():
            return None
        return PurchaseClaim.from_json(raw, unescape=unescape)

    def authorize(
        self,
        bearer_token: Optional[str],
        claim: Optional[PurchaseClaim],
        accepted_products: Optional[Iterable[str]] = None,
        issue_token: bool = False,
    ) -> AuthorizationResult:
        """Authorize a request.

        Args:
            bearer_token: Token from the token header, if any
            claim: Purchase claim, if any
            accepted_products: Product ids acceptable for this request; None accepts
                any catalog product
            issue_token: Mint or rotate a token when authorized by claim

        Returns:
            AuthorizationResult

        Raises:
            IntegrityError: If the ledger or token table is inconsistent
        """
        log_authorization_stage(AuthorizationStage.TOKEN_CHECK.value)
        if bearer_token:
            user_key = self._token_store.resolve(bearer_token)
            if user_key is not None:
                log_authorization_stage(AuthorizationStage.AUTHORIZED.value, user_key=user_key, via="token")
                return AuthorizationResult(authorized=True, user_key=user_key, via_token=True)

        if claim is None:
            return self._deny(DenialReason.NO_CREDENTIALS)

        log_authorization_stage(AuthorizationStage.CLAIM_CHECK.value, order_id=claim.order_id)
        reason = self._check_claim(claim, accepted_products)
        if reason is not None:
            return self._deny(reason, claim.order_id)

        return self._authorize_claim(
            claim,
            is_subscription=self._catalog.is_subscription(claim.product_id),
            issue_token=issue_token,
        )

    def verify_license(
        self, claim: PurchaseClaim, is_subscription: Optional[bool] = None
    ) -> AuthorizationResult:
        """Verify a license the app just obtained.

        Unknown but genuine purchases are recorded. Pro products also get a token.

        Args:
            claim: Purchase claim from the request body
            is_subscription: Verify with the subscriptions API; None asks the catalog

        Raises:
            IntegrityError: If the ledger or token table is inconsistent
        """
        log_authorization_stage(AuthorizationStage.CLAIM_CHECK.value, order_id=claim.order_id, via="verify")
        reason = self._check_claim(claim, accepted_products=None)
        if reason is not None:
            return self._deny(reason, claim.order_id)

        if is_subscription is None:
            is_subscription = self._catalog.is_subscription(claim.product_id)
        return self._authorize_claim(
            claim,
            is_subscription=is_subscription,
            issue_token=claim.product_id in self._catalog.pro_product_ids(),
        )

    def record_purchase(self, claim: PurchaseClaim, is_subscription: Optional[bool] = None) -> bool:
        """Record a new purchase after the upstream store confirms it.

        Every field, including the account id, must be present.

        Returns:
            True if recorded; False if rejected, unverifiable or already known

        Raises:
            IntegrityError: If consolidation could not complete atomically
        """
        reason = self._check_claim(claim, accepted_products=None)
        if reason is not None:
            logger.warning("record_purchase_rejected", order_id=claim.order_id, reason=reason.value)
            return False
        if not claim.obfuscated_account_id:
            logger.warning("record_purchase_rejected", order_id=claim.order_id, reason="missing_account_id")
            return False

        if is_subscription is None:
            is_subscription = self._catalog.is_subscription(claim.product_id)
        try:
            verified = self._verify_upstream(claim, is_subscription)
        except VerificationError as e:
            logger.warning("record_purchase_unverified", order_id=claim.order_id, error=str(e))
            return False

        return self._record(claim, verified)

    def _check_claim(
        self, claim: PurchaseClaim, accepted_products: Optional[Iterable[str]]
    ) -> Optional[DenialReason]:
        missing = claim.missing_fields()
        if missing:
            logger.info("claim_incomplete", order_id=claim.order_id, missing=missing)
            return DenialReason.INVALID_CLAIM
        if claim.package_name != self._package_name:
            logger.warning("claim_wrong_package", order_id=claim.order_id, package_name=claim.package_name)
            return DenialReason.WRONG_PACKAGE
        if claim.product_id not in self._catalog:
            logger.warning("claim_unknown_product", order_id=claim.order_id, product_id=claim.product_id)
            return DenialReason.PRODUCT_NOT_ACCEPTED
        if accepted_products is not None and claim.product_id not in set(accepted_products):
            logger.info("claim_product_not_accepted", order_id=claim.order_id, product_id=claim.product_id)
            return DenialReason.PRODUCT_NOT_ACCEPTED
        return None

    def _authorize_claim(
        self, claim: PurchaseClaim, is_subscription: bool, issue_token: bool
    ) -> AuthorizationResult:
        log_authorization_stage(
            AuthorizationStage.UPSTREAM_VERIFY.value,
            order_id=claim.order_id,
            product_id=claim.product_id,
        )

        # Local lookup first; a token bound elsewhere never reaches upstream
        scans = self._ledger.get_scans(claim.order_id, claim.purchase_token)
        if scans == ScanCount.TOKEN_CONFLICT:
            logger.error(
                "purchase_token_conflict",
                order_id=claim.order_id,
                product_id=claim.product_id,
            )
            return self._deny(DenialReason.TOKEN_CONFLICT, claim.order_id)

        try:
            verified = self._verify_upstream(claim, is_subscription)
        except UpstreamUnavailableError as e:
            logger.error("upstream_unavailable", order_id=claim.order_id, error=str(e))
            return self._deny(DenialReason.UPSTREAM_UNAVAILABLE, claim.order_id)
        except VerificationError as e:
            logger.warning("upstream_rejected", order_id=claim.order_id, error=str(e))
            reason = (
                DenialReason.SUBSCRIPTION_INACTIVE
                if isinstance(e, InactivePurchaseError)
                else DenialReason.UPSTREAM_REJECTED
            )
            return self._deny(reason, claim.order_id)

        if scans == ScanCount.NOT_FOUND:
            self._record(claim, verified)
            scans = self._ledger.get_scans(claim.order_id, claim.purchase_token)
        if scans < 0:
            return self._deny(
                DenialReason.TOKEN_CONFLICT if scans == ScanCount.TOKEN_CONFLICT else DenialReason.UNKNOWN_PURCHASE,
                claim.order_id,
            )

        self._ledger.update_time_used(claim.order_id)
        user_key = claim.user_key
        new_token = self._token_store.issue_or_rotate(user_key) if issue_token else None

        log_authorization_stage(
            AuthorizationStage.AUTHORIZED.value,
            order_id=claim.order_id,
            user_key=user_key,
            scans_left=scans,
            via="claim",
        )
        return AuthorizationResult(
            authorized=True,
            user_key=user_key,
            order_id=claim.order_id,
            product_id=claim.product_id,
            scans_left=scans,
            new_token=new_token,
        )

    def _verify_upstream(self, claim: PurchaseClaim, is_subscription: bool) -> VerifiedPurchase:
        """Ask the store, then insist it vouches for this order and that it is entitled.

        Raises:
            UpstreamUnavailableError: Store unreachable
            InactivePurchaseError: Purchase known but not currently entitled
            VerificationError: Store rejects the purchase or reports another order
        """
        verified = self._verifier.verify(
            claim.package_name,
            claim.product_id,
            claim.purchase_token,
            is_subscription,
            order_id=claim.order_id,
        )
        if not verified.matches_order(claim.order_id):
            raise VerificationError(
                f"Store reports order {verified.order_id}, claim says {claim.order_id}"
            )
        if not verified.is_entitled():
            raise InactivePurchaseError(
                f"Purchase {claim.order_id} is not entitled "
                f"(lifecycle={verified.lifecycle_state}, purchase_state={verified.purchase_state})"
            )
        return verified

    def _record(self, claim: PurchaseClaim, verified: VerifiedPurchase) -> bool:
        account_id = claim.obfuscated_account_id or verified.account_id or ""
        recorded = self._ledger.record_purchase(
            claim.order_id,
            claim.product_id,
            purchase_token=claim.purchase_token,
            account_id=account_id,
            quantity=claim.quantity,
        )
        logger.info(
            "verified_purchase_recorded" if recorded else "verified_purchase_not_recorded",
            order_id=claim.order_id,
            product_id=claim.product_id,
            acknowledged=verified.acknowledged,
            test_order=verified.is_test_order,
        )
        return recorded

    @staticmethod
    def _deny(reason: DenialReason, order_id: Optional[str] = None) -> AuthorizationResult:
        log_authorization_stage(AuthorizationStage.DENIED.value, order_id=order_id, reason=reason.value)
        return AuthorizationResult.denied(reason, order_id)


def claim_or_none(raw: Optional[str], unescape: bool = True) -> Tuple[Optional[PurchaseClaim], bool]:
    """Parse a claim, reporting malformed text instead of raising.

    Returns:
        (claim, malformed)
    """
    try:
        return Authorizer.parse_claim(raw, unescape=unescape), False
    except InvalidClaimError as e:
        logger.warning("claim_unparseable", error=str(e))
        return None, True
