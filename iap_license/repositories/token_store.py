"""Token store - short-lived bearer tokens that stand in for a verified purchase.

Tokens expire after a fixed lifetime and are never swept; an expired token is
rejected on lookup and replaced the next time its owner is verified. A token
close to expiry is rotated so a client never holds a token that stops working
before it receives the replacement.
"""

from datetime import timedelta
from typing import Optional

from iap_license.exceptions import IntegrityError
from iap_license.logging_config import get_logger
from iap_license.models import TokenRecord, TokenSettings
from iap_license.repositories.table import EntityNotFoundError, Table, TableError
from iap_license.state_logger import log_token_issued
from iap_license.utils.clock import Clock
from iap_license.utils.token_generator import generate_token, mask_token

logger = get_logger(__name__)


class TokenConflictError(IntegrityError):
    """Raised when an expiring token could not be removed, or a new one not stored."""

    pass


class TokenStore:
    """Bearer tokens for one tenant partition, keyed by token value."""

    def __init__(
        self,
        table: Table[TokenRecord],
        partition_key: str,
        settings: Optional[TokenSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self._table = table
        self._partition_key = partition_key
        self._settings = settings or TokenSettings()
        self._clock = clock or Clock()

    def find_token_for(self, user_key: str) -> Optional[TokenRecord]:
        """Latest-expiring token stored for a user key, live or not."""
        records = self._table.query(
            partition_key=self._partition_key,
            predicate=lambda r: r.pro_order_id == user_key,
        )
        if not records:
            return None
        return max(records, key=lambda r: r.time_expired)

    def issue_or_rotate(self, user_key: str) -> Optional[str]:
        """Give the user a token if they need one.

        Returns:
            A new token when none exists or the current one is about to expire;
            None when the current token is still good (the client keeps it)

        Raises:
            ValueError: If user_key is empty
            TokenConflictError: If an expiring token could not be removed
        """
        if not user_key:
            raise ValueError("user_key must not be empty")

        current = self.find_token_for(user_key)
        if current is None:
            logger.info("token_not_found_issuing", user_key=user_key)
            return self._issue(user_key)

        now = self._clock.now()
        if current.remaining_seconds(now) >= self._settings.renew_window_seconds:
            logger.debug(
                "token_still_current",
                user_key=user_key,
                token=mask_token(current.token),
                remaining_seconds=round(current.remaining_seconds(now), 1),
            )
            return None

        self._remove(user_key, current)
        return self._issue(user_key, replaced=current.token)

    def resolve(self, token: Optional[str]) -> Optional[str]:
        """User key for a live token; None for unknown or expired tokens."""
        if not token:
            return None

        record = self._table.get_entity_if_exists(self._partition_key, token)
        if record is None:
            logger.info("token_not_found", token=mask_token(token))
            return None
        if not record.is_live(self._clock.now()):
            logger.info("token_expired", token=mask_token(token), user_key=record.pro_order_id)
            return None
        return record.pro_order_id

    def _remove(self, user_key: str, record: TokenRecord) -> None:
        try:
            self._table.delete_entity(record.partition_key, record.row_key)
        except EntityNotFoundError:
            # Another request rotated it first; the replacement below is still needed
            logger.info("token_already_removed", user_key=user_key, token=mask_token(record.token))
        except TableError as e:
            logger.error(
                "token_removal_failed",
                user_key=user_key,
                token=mask_token(record.token),
                error=str(e),
            )
            raise TokenConflictError(f"Token removal failed for {user_key}: {e}") from e

    def _issue(self, user_key: str, replaced: Optional[str] = None) -> str:
        token = generate_token(self._settings.length)
        expires = self._clock.now() + timedelta(seconds=self._settings.lifetime_seconds)
        record = TokenRecord(
            partition_key=self._partition_key,
            row_key=token,
            pro_order_id=user_key,
            time_expired=expires,
        )
        try:
            self._table.add_entity(record)
        except TableError as e:
            logger.error("token_insert_failed", user_key=user_key, error=str(e))
            raise TokenConflictError(f"Token generation failed for {user_key}: {e}") from e

        log_token_issued(user_key, token, expires.isoformat(), replaced_token=replaced)
        return token
