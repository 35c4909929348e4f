"""Bearer token generation and item-name validation."""

import re
import secrets
import string

TOKEN_ALPHABET = string.ascii_letters + string.digits
DEFAULT_TOKEN_LENGTH = 50

_ITEM_NAME_PATTERN = re.compile(r"^[0-3]\d{13}$")


def generate_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """Generate a high-entropy alphanumeric bearer token.

    Args:
        length: Number of characters (50 characters carry ~297 bits)

    Returns:
        Token string
    """
    if length < 1:
        raise ValueError("Token length must be positive")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def is_valid_token(token: str, length: int = DEFAULT_TOKEN_LENGTH) -> bool:
    """Check that a string has the shape of a generated token."""
    if not token or not isinstance(token, str) or len(token) != length:
        return False
    return all(c in TOKEN_ALPHABET for c in token)


def is_valid_item_name(name: str) -> bool:
    """Validate a stored item name.

    Names are 14 digits intended as yyyymmddhhmmss; the only enforced constraint
    beyond that is a year below 4000.
    """
    if not name or not isinstance(name, str):
        return False
    return bool(_ITEM_NAME_PATTERN.match(name))


def mask_token(token: str, visible: int = 8) -> str:
    """Shorten a secret for logging."""
    if not token:
        return ""
    return token[:visible] + "..." if len(token) > visible else token
