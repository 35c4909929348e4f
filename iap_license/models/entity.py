"""Base model for rows stored in a table."""

from datetime import datetime
from typing import ClassVar, Optional, Tuple

from pydantic import BaseModel, Field


class TableEntity(BaseModel):
    """A row addressed by (partition_key, row_key).

    ``etag`` and ``timestamp`` are owned by the table: they are assigned on every
    write and any value set by the caller is only used as a write precondition.

    ``unique_fields`` names fields whose non-empty values may appear on at most
    one row per partition; tables reject writes that would break this.
    """

    unique_fields: ClassVar[Tuple[str, ...]] = ()

    partition_key: str = Field(..., min_length=1, description="Partition (tenant or user key)")
    row_key: str = Field(..., min_length=1, description="Row identity within the partition")
    etag: Optional[str] = Field(None, description="Version stamp assigned by the table")
    timestamp: Optional[datetime] = Field(None, description="Last write time assigned by the table")
