"""Per-user named item storage (meals, person lists, venue lists) and images.

Items live in the caller's partition (their user key) under a 14 digit
yyyymmddhhmmss name. Enumeration is newest first and pages backwards with
``before``.
"""

import base64
from typing import List, Optional, Tuple

from iap_license.logging_config import get_logger
from iap_license.models import ImageBlob, StorageConfig, StoredItem, StoredItemSummary
from iap_license.repositories.table import EntityNotFoundError, Table
from iap_license.utils.token_generator import is_valid_item_name

logger = get_logger(__name__)

MAX_ENUMERATE_ITEMS = 1000


class InvalidItemNameError(ValueError):
    """Raised when an item name is not a 14 digit timestamp."""

    pass


class ItemNotFoundError(Exception):
    """Raised when a stored item does not exist."""

    pass


def _check_name(name: str) -> None:
    if not is_valid_item_name(name):
        raise InvalidItemNameError(f"Invalid item name: {name!r}")


class ImageStore:
    """Receipt images keyed by (user key, item name)."""

    def __init__(self, table: Table[ImageBlob]):
        self._table = table

    def put(self, user_key: str, name: str, content: bytes, content_type: str = "image/jpeg") -> None:
        _check_name(name)
        self._table.upsert_entity(
            ImageBlob(
                partition_key=user_key,
                row_key=name,
                content_b64=base64.b64encode(content).decode("ascii"),
                content_type=content_type,
            )
        )
        logger.info("image_stored", user_key=user_key, name=name, size=len(content))

    def get(self, user_key: str, name: str) -> Optional[Tuple[bytes, str]]:
        """Image bytes and content type, or None."""
        _check_name(name)
        blob = self._table.get_entity_if_exists(user_key, name)
        if blob is None:
            return None
        return base64.b64decode(blob.content_b64), blob.content_type

    def delete(self, user_key: str, name: str) -> bool:
        """Delete an image; False if there was none."""
        _check_name(name)
        try:
            self._table.delete_entity(user_key, name)
        except EntityNotFoundError:
            return False
        logger.info("image_deleted", user_key=user_key, name=name)
        return True

    def exists(self, user_key: str, name: str) -> bool:
        return self._table.get_entity_if_exists(user_key, name) is not None


class DataStore:
    """Generic item store; the StorageConfig decides summary and image handling."""

    def __init__(
        self,
        storage: StorageConfig,
        table: Table[StoredItem],
        image_store: Optional[ImageStore] = None,
    ):
        self._storage = storage
        self._table = table
        self._image_store = image_store if storage.check_image else None

    @property
    def storage(self) -> StorageConfig:
        return self._storage

    def put(self, user_key: str, name: str, data: str, summary: Optional[str] = None) -> StoredItem:
        """Create or replace an item.

        Raises:
            InvalidItemNameError: If the name is not a 14 digit timestamp
            ValueError: If this kind needs a summary and none was given
        """
        _check_name(name)
        if self._storage.use_summary_field and summary is None:
            raise ValueError(f"{self._storage.table_name} items require a summary")

        item = StoredItem(
            partition_key=user_key,
            row_key=name,
            data=data,
            data_length=len(data),
            summary=summary or "",
        )
        stored = self._table.upsert_entity(item)
        logger.info(
            "item_stored",
            table=self._table.name,
            user_key=user_key,
            name=name,
            data_length=item.data_length,
        )
        return stored

    def get(self, user_key: str, name: str) -> str:
        """Item data.

        Raises:
            InvalidItemNameError: If the name is malformed
            ItemNotFoundError: If there is no such item
        """
        _check_name(name)
        item = self._table.get_entity_if_exists(user_key, name)
        if item is None:
            logger.info("item_not_found", table=self._table.name, user_key=user_key, name=name)
            raise ItemNotFoundError(f"{self._storage.table_name} item {name} not found")
        return item.data

    def delete(self, user_key: str, name: str) -> None:
        """Delete an item and any image stored with it.

        Raises:
            ItemNotFoundError: If there is no such item
        """
        _check_name(name)
        try:
            self._table.delete_entity(user_key, name)
        except EntityNotFoundError:
            raise ItemNotFoundError(f"{self._storage.table_name} item {name} not found")
        logger.info("item_deleted", table=self._table.name, user_key=user_key, name=name)
        if self._image_store is not None:
            self._image_store.delete(user_key, name)

    def enumerate(self, user_key: str, top: int, before: Optional[str] = None) -> List[StoredItemSummary]:
        """List a user's items newest first.

        Args:
            user_key: Owner partition
            top: Page size, 1..1000
            before: Only items named strictly earlier than this

        Raises:
            ValueError: If top is out of range
            InvalidItemNameError: If before is malformed
        """
        if top < 1 or top > MAX_ENUMERATE_ITEMS:
            raise ValueError(f"top must be between 1 and {MAX_ENUMERATE_ITEMS}")
        if before is not None:
            _check_name(before)

        items = self._table.query(partition_key=user_key, descending=True, before=before, limit=top)
        return [
            StoredItemSummary(
                name=item.name,
                data_length=item.data_length,
                summary=item.summary if self._storage.use_summary_field else None,
                has_remote_image=(
                    self._image_store.exists(user_key, item.name) if self._image_store else False
                ),
            )
            for item in items
        ]
