"""License endpoints.

Implements:
- POST /verify?subscription=0|1
- POST /recordpurchase?subscription=0|1
- GET /version
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from iap_license import __version__
from iap_license.api.dependencies import (
    attach_token,
    denial_exception,
    error_detail,
    get_authorizer,
    get_config,
)
from iap_license.config import Config
from iap_license.logging_config import SERVICE_NAME, get_logger
from iap_license.models import PurchaseClaim, RecordPurchaseResponse, VerifyResponse, VersionResponse
from iap_license.services.authorizer import Authorizer

logger = get_logger(__name__)
router = APIRouter(tags=["License"])


def _subscription_flag(value: Optional[int]) -> Optional[bool]:
    return None if value is None else value == 1


@router.post("/verify", response_model=VerifyResponse)
def verify_license(
    claim: PurchaseClaim,
    response: Response,
    subscription: Optional[int] = Query(None, ge=0, le=1, description="1 to verify a subscription"),
    authorizer: Authorizer = Depends(get_authorizer),
    config: Config = Depends(get_config),
) -> VerifyResponse:
    """Verify a license the app just obtained and report its remaining scans.

    Genuine purchases the service has not seen yet are recorded. Pro licenses
    also receive a bearer token in the token response header.
    """
    logger.info("verify_request", order_id=claim.order_id, product_id=claim.product_id)

    result = authorizer.verify_license(claim, is_subscription=_subscription_flag(subscription))
    if not result.authorized:
        raise denial_exception(result)

    attach_token(response, result, config.headers.token)
    logger.info(
        "verify_success",
        order_id=result.order_id,
        scans_left=result.scans_left,
        token_issued=result.new_token is not None,
    )
    return VerifyResponse(scans_left=result.scans_left, order_id=result.order_id)


@router.post("/recordpurchase", response_model=RecordPurchaseResponse)
def record_purchase(
    claim: PurchaseClaim,
    subscription: Optional[int] = Query(None, ge=0, le=1, description="1 to verify a subscription"),
    authorizer: Authorizer = Depends(get_authorizer),
) -> RecordPurchaseResponse:
    """Record a new purchase once the upstream store confirms it."""
    logger.info("record_purchase_request", order_id=claim.order_id, product_id=claim.product_id)

    recorded = authorizer.record_purchase(claim, is_subscription=_subscription_flag(subscription))
    if not recorded:
        raise HTTPException(
            status_code=400,
            detail=error_detail(400, "Purchase was not recorded", "FAILED_PRECONDITION"),
        )
    return RecordPurchaseResponse(recorded=True, order_id=claim.order_id)


@router.get("/version", response_model=VersionResponse)
def version(request: Request, config: Config = Depends(get_config)) -> VersionResponse:
    verifier = request.app.state.verifier
    scanner = request.app.state.scanner
    return VersionResponse(
        service=SERVICE_NAME,
        version=__version__,
        debug=config.service.debug,
        package_name=config.package_name,
        storage_backend=config.storage.backend,
        play_credential="Present" if verifier.has_credential else "Missing",
        scanner="Present" if scanner.configured else "Missing",
    )
