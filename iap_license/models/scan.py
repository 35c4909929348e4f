"""Receipt scan result returned by the OCR collaborator."""

from typing import Optional

from pydantic import BaseModel, Field


class OrderLine(BaseModel):
    item_name: str = Field(..., description="Line item text")
    item_cost: str = Field(..., description="Line item amount as printed")


class FormElement(BaseModel):
    field_name: str = Field(..., description="Receipt field (MerchantName, Subtotal, ...)")
    field_value: str = Field(..., description="Extracted value")


class ScannedBill(BaseModel):
    """Fields extracted from a receipt image."""

    source_name: str = Field(default="", description="Scanner that produced the result")
    order_lines: list[OrderLine] = Field(default_factory=list)
    form_elements: list[FormElement] = Field(default_factory=list)
    scans_left: Optional[int] = Field(None, description="Quota remaining after this scan")
