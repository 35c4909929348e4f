"""State change logging for purchases, tokens and authorization decisions.

Tracks transitions with before/after values for auditing. Secrets (purchase
tokens, bearer tokens) are always truncated.
"""

from typing import Any, Optional

from iap_license.logging_config import get_logger
from iap_license.utils.token_generator import mask_token

logger = get_logger(__name__)


def log_scans_change(
    order_id: str,
    old_scans: int,
    new_scans: int,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a change to a purchase's remaining scans.

    Args:
        order_id: Ledger order id
        old_scans: Scans before the change
        new_scans: Scans after the change
        reason: Why it changed (consolidated, scan_used, ...)
        **extra_context: Additional context (account, product, ...)
    """
    logger.info(
        "scans_changed",
        order_id=order_id,
        old_scans=old_scans,
        new_scans=new_scans,
        reason=reason,
        **extra_context,
    )


def log_purchase_recorded(
    order_id: str,
    product_id: str,
    scans_left: int,
    carried_over: int = 0,
    **extra_context: Any,
) -> None:
    logger.info(
        "purchase_recorded",
        order_id=order_id,
        product_id=product_id,
        scans_left=scans_left,
        carried_over=carried_over,
        **extra_context,
    )


def log_token_issued(
    user_key: str,
    token: str,
    expires_at: str,
    replaced_token: Optional[str] = None,
) -> None:
    """Log a bearer token being issued (or rotated when replaced_token is set)."""
    logger.info(
        "token_rotated" if replaced_token else "token_issued",
        user_key=user_key,
        token=mask_token(token),
        replaced_token=mask_token(replaced_token) if replaced_token else None,
        expires_at=expires_at,
    )


def log_authorization_stage(
    stage: str,
    order_id: Optional[str] = None,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log an authorizer state transition."""
    logger.info(
        "authorization_stage",
        stage=stage,
        order_id=order_id,
        reason=reason,
        **extra_context,
    )
