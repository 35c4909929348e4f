"""Utility functions and helpers."""

from iap_license.utils.clock import Clock
from iap_license.utils.token_generator import (
    generate_token,
    is_valid_item_name,
    is_valid_token,
    mask_token,
)

__all__ = [
    "Clock",
    # Tokens
    "generate_token",
    "is_valid_token",
    "mask_token",
    # Item names
    "is_valid_item_name",
]
