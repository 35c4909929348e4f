"""Per-user named blobs (meals, person lists, venue lists, images)."""

from pydantic import BaseModel, Field

from iap_license.models.entity import TableEntity


class StorageConfig(BaseModel):
    """Describes one kind of stored item; one generic DataStore serves every kind."""

    table_name: str = Field(..., min_length=1, description="Table name without prefix")
    use_summary_field: bool = Field(default=False, description="Items carry a summary string")
    check_image: bool = Field(default=False, description="Report whether an image exists per item")


MEAL_STORAGE = StorageConfig(table_name="Meal", use_summary_field=True, check_image=True)
PERSON_LIST_STORAGE = StorageConfig(table_name="PersonList")
VENUE_LIST_STORAGE = StorageConfig(table_name="VenueList")


class StoredItem(TableEntity):
    """Row keyed by (user key, item name)."""

    data: str = Field(default="")
    data_length: int = Field(default=0, ge=0)
    summary: str = Field(default="")

    @property
    def name(self) -> str:
        return self.row_key


class ImageBlob(TableEntity):
    """Receipt image keyed by (user key, item name)."""

    content_b64: str = Field(..., description="Base64 image bytes")
    content_type: str = Field(default="image/jpeg")
