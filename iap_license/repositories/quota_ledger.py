"""Quota ledger - purchase records and their remaining scans.

Every purchase is recorded once, keyed by order id, and never deleted. A
consumable purchase absorbs the unused scans of the same account's earlier
purchases; the absorbed records are zeroed in the same transaction that
inserts the new one, so quota is never held by two records at once nor lost.

Single-record changes (scan use, last-use time, token backfill) are
conditional writes on the etag read just before, retried on conflict.

A purchase token binds to at most one record. The lookups here only give
early answers; the table's unique constraint on purchase_token decides
when two writers race for the same token.
"""

from typing import List, Optional

from iap_license.exceptions import IntegrityError
from iap_license.logging_config import get_logger
from iap_license.models import LedgerSettings, PurchaseRecord, ScanCount
from iap_license.repositories.product_catalog import ProductCatalog
from iap_license.repositories.table import (
    ActionType,
    EntityExistsError,
    EntityNotFoundError,
    PreconditionFailedError,
    Table,
    TransactionAction,
    TransactionFailedError,
    UniqueConstraintError,
)
from iap_license.state_logger import log_purchase_recorded, log_scans_change
from iap_license.utils.clock import Clock
from iap_license.utils.token_generator import mask_token

logger = get_logger(__name__)


class LedgerConflictError(IntegrityError):
    """Raised when a conditional update keeps losing to concurrent writers."""

    pass


class QuotaConsolidationError(IntegrityError):
    """Raised when the consolidation transaction could not be completed atomically."""

    pass


class QuotaLedger:
    """Purchase records for one tenant partition.

    Args:
        table: Purchases table (rows keyed by order id)
        catalog: Product catalog deciding which products are consumable
        partition_key: Tenant partition holding every purchase
        settings: Retry limits
        clock: Time source for audit fields
    """

    def __init__(
        self,
        table: Table[PurchaseRecord],
        catalog: ProductCatalog,
        partition_key: str,
        settings: Optional[LedgerSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self._table = table
        self._catalog = catalog
        self._partition_key = partition_key
        self._settings = settings or LedgerSettings()
        self._clock = clock or Clock()

    @property
    def max_attempts(self) -> int:
        """Attempts allowed for each optimistic-concurrency write.

        Returns:
            Configured attempt limit (at least 1)
        """
        return self._settings.max_attempts

    def find_record(self, order_id: str) -> Optional[PurchaseRecord]:
        """Read the purchase record for an order.

        Args:
            order_id: Provider order id

        Returns:
            The record, or None if the order was never recorded
        """
        return self._table.get_entity_if_exists(self._partition_key, order_id)

    def find_by_purchase_token(self, purchase_token: str) -> Optional[PurchaseRecord]:
        """Find the record a purchase token is bound to.

        Args:
            purchase_token: Provider proof token; empty never matches

        Returns:
            The bound record, or None if the token is unused
        """
        if not purchase_token:
            return None
        matches = self._table.query(
            partition_key=self._partition_key,
            predicate=lambda r: r.purchase_token == purchase_token,
            limit=1,
        )
        return matches[0] if matches else None

    def records_with_scans(self, account_id: str) -> List[PurchaseRecord]:
        """Records of an account that still hold scans.

        Args:
            account_id: Obfuscated account id

        Returns:
            Records with scans_left > 0, ordered by order id
        """
        return self._table.query(
            partition_key=self._partition_key,
            predicate=lambda r: r.obfuscated_account_id == account_id and r.scans_left > 0,
        )

    def total_scans(self, account_id: str) -> int:
        """Scans an account holds across all its records.

        Args:
            account_id: Obfuscated account id

        Returns:
            Sum of scans_left over the account's records
        """
        return sum(r.scans_left for r in self.records_with_scans(account_id))

    def record_purchase(
        self,
        order_id: str,
        product_id: str,
        purchase_token: str = "",
        account_id: str = "",
        quantity: int = 1,
    ) -> bool:
        """Record a purchase, folding the account's unused scans into it when consumable.

        Args:
            order_id: Provider order id (record identity)
            product_id: Product purchased
            purchase_token: Provider proof token; must not be bound to another order
            account_id: Obfuscated account id grouping consumable purchases
            quantity: Units bought (at least one unit is granted)

        Returns:
            True if recorded, False if the order id or purchase token is already known

        Raises:
            ValueError: If order_id or product_id is empty
            QuotaConsolidationError: If the consolidation transaction kept failing
        """
        if not order_id:
            raise ValueError("order_id must not be empty")
        if not product_id:
            raise ValueError("product_id must not be empty")

        for attempt in range(1, self.max_attempts + 1):
            if self.find_record(order_id) is not None:
                logger.info("purchase_already_recorded", order_id=order_id)
                return False

            owner = self.find_by_purchase_token(purchase_token)
            if owner is not None:
                logger.warning(
                    "purchase_token_already_bound",
                    order_id=order_id,
                    bound_order_id=owner.order_id,
                    purchase_token=mask_token(purchase_token),
                )
                return False

            sources: List[PurchaseRecord] = []
            granted = 0
            if self._catalog.is_consumable(product_id):
                granted = self._catalog.scans_per_unit(product_id) * max(quantity, 1)
                # Accounts with no id cannot be told apart, so their quota is never merged
                if account_id:
                    sources = self.records_with_scans(account_id)
            carry_over = sum(r.scans_left for r in sources)

            now = self._clock.now()
            record = PurchaseRecord(
                partition_key=self._partition_key,
                row_key=order_id,
                product_id=product_id,
                purchase_token=purchase_token,
                obfuscated_account_id=account_id,
                scans_left=carry_over + granted,
                time_created=now,
            )

            if not sources:
                try:
                    self._table.add_entity(record)
                except UniqueConstraintError:
                    logger.warning(
                        "purchase_token_bound_concurrently",
                        order_id=order_id,
                        purchase_token=mask_token(purchase_token),
                    )
                    return False
                except EntityExistsError:
                    logger.info("purchase_recorded_concurrently", order_id=order_id)
                    return False
                log_purchase_recorded(order_id, product_id, record.scans_left, account_id=account_id)
                return True

            actions = [
                TransactionAction(
                    ActionType.UPDATE,
                    source.model_copy(update={"scans_left": 0}),
                    if_match=source.etag,
                )
                for source in sources
            ]
            actions.append(TransactionAction(ActionType.ADD, record))

            try:
                self._table.submit_transaction(actions)
            except TransactionFailedError as e:
                # Retried from fresh reads; a lost token race is rejected there
                logger.warning(
                    "quota_consolidation_retry",
                    order_id=order_id,
                    attempt=attempt,
                    sources=len(sources),
                    carry_over=carry_over,
                    error=str(e),
                )
                continue

            for source in sources:
                log_scans_change(
                    source.order_id, source.scans_left, 0, reason="consolidated", into_order_id=order_id
                )
            log_purchase_recorded(
                order_id, product_id, record.scans_left, carried_over=carry_over, account_id=account_id
            )
            return True

        logger.error(
            "quota_consolidation_failed",
            order_id=order_id,
            account_id=account_id,
            attempts=self.max_attempts,
        )
        raise QuotaConsolidationError(
            f"Could not consolidate quota into {order_id} after {self.max_attempts} attempts"
        )

    def get_scans(self, order_id: str, purchase_token: Optional[str] = None) -> int:
        """Remaining scans for a known order.

        A legacy record with no purchase token gets the incoming one bound to it,
        unless that token already belongs to another order.

        Args:
            order_id: Order id to look up
            purchase_token: Token the caller presents; None skips the token check

        Returns:
            scans_left, or ScanCount.NOT_FOUND / ScanCount.TOKEN_CONFLICT
        """
        if not order_id:
            raise ValueError("order_id must not be empty")

        for _ in range(self.max_attempts):
            record = self.find_record(order_id)
            if record is None:
                logger.info("purchase_not_found", order_id=order_id)
                return ScanCount.NOT_FOUND
            if purchase_token is None:
                return record.scans_left

            if record.purchase_token:
                if record.purchase_token != purchase_token:
                    logger.warning(
                        "purchase_token_mismatch",
                        order_id=order_id,
                        presented=mask_token(purchase_token),
                    )
                    return ScanCount.TOKEN_CONFLICT
                return record.scans_left

            if not purchase_token:
                return record.scans_left

            owner = self.find_by_purchase_token(purchase_token)
            if owner is not None and owner.order_id != order_id:
                logger.warning(
                    "purchase_token_bound_elsewhere",
                    order_id=order_id,
                    bound_order_id=owner.order_id,
                    presented=mask_token(purchase_token),
                )
                return ScanCount.TOKEN_CONFLICT

            updated = record.model_copy(
                update={"purchase_token": purchase_token, "time_used": self._clock.now()}
            )
            try:
                self._table.update_entity(updated, if_match=record.etag)
            except PreconditionFailedError:
                continue
            except EntityNotFoundError:
                return ScanCount.NOT_FOUND
            except UniqueConstraintError:
                # Another order took the token between the lookup and the write
                logger.warning(
                    "purchase_token_bound_elsewhere",
                    order_id=order_id,
                    presented=mask_token(purchase_token),
                )
                return ScanCount.TOKEN_CONFLICT
            logger.info(
                "purchase_token_backfilled",
                order_id=order_id,
                purchase_token=mask_token(purchase_token),
            )
            return record.scans_left

        raise LedgerConflictError(f"Could not bind purchase token to {order_id}, too many concurrent updates")

    def decrement_scans(self, order_id: str) -> int:
        """Use one scan.

        Returns:
            Scans left after the decrement; 0 when the order is unknown or exhausted

        Raises:
            LedgerConflictError: If concurrent writers won every attempt
        """
        if not order_id:
            raise ValueError("order_id must not be empty")

        for attempt in range(1, self.max_attempts + 1):
            record = self.find_record(order_id)
            if record is None or record.scans_left <= 0:
                return 0

            updated = record.model_copy(
                update={"scans_left": record.scans_left - 1, "time_used": self._clock.now()}
            )
            try:
                self._table.update_entity(updated, if_match=record.etag)
            except PreconditionFailedError:
                logger.debug("decrement_scans_conflict", order_id=order_id, attempt=attempt)
                continue
            except EntityNotFoundError:
                return 0
            log_scans_change(order_id, record.scans_left, updated.scans_left, reason="scan_used")
            return updated.scans_left

        logger.error("decrement_scans_failed", order_id=order_id, attempts=self.max_attempts)
        raise LedgerConflictError(f"Could not decrement scans for {order_id}, too many concurrent updates")

    def update_time_used(self, order_id: str) -> bool:
        """Touch the last-use time.

        Returns:
            True if the record exists and was updated
        """
        if not order_id:
            raise ValueError("order_id must not be empty")

        for attempt in range(1, self.max_attempts + 1):
            record = self.find_record(order_id)
            if record is None:
                return False
            updated = record.model_copy(update={"time_used": self._clock.now()})
            try:
                self._table.update_entity(updated, if_match=record.etag)
            except PreconditionFailedError:
                logger.debug("update_time_used_conflict", order_id=order_id, attempt=attempt)
                continue
            except EntityNotFoundError:
                return False
            return True

        logger.error("update_time_used_failed", order_id=order_id, attempts=self.max_attempts)
        raise LedgerConflictError(f"Could not update time used for {order_id}, too many concurrent updates")
