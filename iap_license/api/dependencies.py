"""Shared route dependencies: service lookup and request authorization."""

from typing import Iterable, Optional

from fastapi import HTTPException, Request, Response

from iap_license.config import Config
from iap_license.logging_config import bind_context, get_logger
from iap_license.models import AuthorizationResult, DenialReason, PurchaseClaim
from iap_license.repositories.product_catalog import ProductCatalog
from iap_license.services.authorizer import Authorizer, claim_or_none

logger = get_logger(__name__)

_DENIAL_STATUS = {
    DenialReason.NO_CREDENTIALS: (401, "UNAUTHENTICATED"),
    DenialReason.INVALID_CLAIM: (400, "INVALID_ARGUMENT"),
    DenialReason.WRONG_PACKAGE: (400, "INVALID_ARGUMENT"),
    DenialReason.UPSTREAM_UNAVAILABLE: (503, "UNAVAILABLE"),
}


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_authorizer(request: Request) -> Authorizer:
    return request.app.state.authorizer


def get_catalog(request: Request) -> ProductCatalog:
    return request.app.state.catalog


def error_detail(code: int, message: str, status: str) -> dict:
    return {"error": {"code": code, "message": message, "status": status}}


def bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail=error_detail(400, message, "INVALID_ARGUMENT"))


def denial_exception(result: AuthorizationResult) -> HTTPException:
    """HTTP error for a denied authorization."""
    reason = result.reason or DenialReason.NO_CREDENTIALS
    code, status = _DENIAL_STATUS.get(reason, (403, "PERMISSION_DENIED"))
    return HTTPException(
        status_code=code,
        detail=error_detail(code, f"Not authorized: {reason.value}", status),
    )


def parse_claim_text(raw: Optional[str], unescape: bool) -> Optional[PurchaseClaim]:
    """Claim from header or form text.

    Raises:
        HTTPException: 400 if the text is present but unparseable
    """
    claim, malformed = claim_or_none(raw, unescape=unescape)
    if malformed:
        raise bad_request("Purchase claim could not be parsed")
    return claim


def authorize_request(
    request: Request,
    accepted_products: Iterable[str],
    claim: Optional[PurchaseClaim] = None,
    issue_token: bool = True,
    use_token: bool = True,
) -> AuthorizationResult:
    """Authorize a request from its token header, or a claim (header unless given).

    Raises:
        HTTPException: If the request is not authorized
    """
    config = get_config(request)
    if claim is None:
        claim = parse_claim_text(request.headers.get(config.headers.purchase), unescape=True)

    result = get_authorizer(request).authorize(
        request.headers.get(config.headers.token) if use_token else None,
        claim,
        accepted_products=accepted_products,
        issue_token=issue_token,
    )
    if not result.authorized:
        raise denial_exception(result)
    bind_context(user_key=result.user_key)
    return result


def require_pro_user(request: Request) -> AuthorizationResult:
    """Dependency for data routes: a live token or a pro license claim."""
    return authorize_request(request, get_catalog(request).pro_product_ids())


def attach_token(response: Response, result: AuthorizationResult, header_name: str) -> None:
    """Hand a newly minted token back to the client."""
    if result.new_token:
        response.headers[header_name] = result.new_token
