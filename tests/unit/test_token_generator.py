"""Tests for token generation utilities."""

import pytest

from iap_license.utils.token_generator import (
    DEFAULT_TOKEN_LENGTH,
    TOKEN_ALPHABET,
    generate_token,
    is_valid_item_name,
    is_valid_token,
    mask_token,
)


class TestTokenGeneration:
    """Test bearer token generation."""

    def test_default_length_and_alphabet(self):
        token = generate_token()

        assert len(token) == DEFAULT_TOKEN_LENGTH
        assert all(c in TOKEN_ALPHABET for c in token)

    def test_custom_length(self):
        assert len(generate_token(64)) == 64

    def test_tokens_are_unique(self):
        tokens = [generate_token() for _ in range(200)]
        assert len(tokens) == len(set(tokens))

    def test_non_positive_length_rejected(self):
        with pytest.raises(ValueError):
            generate_token(0)


class TestTokenValidation:
    """Test token shape checks."""

    def test_generated_token_is_valid(self):
        assert is_valid_token(generate_token())

    @pytest.mark.parametrize(
        "token",
        ["", None, "short", "a" * 49, "a" * 49 + "-", "a" * 51],
    )
    def test_invalid_tokens(self, token):
        assert not is_valid_token(token)


class TestItemNames:
    """Test 14 digit item name validation."""

    @pytest.mark.parametrize("name", ["20240301120000", "00000000000000", "39991231235959"])
    def test_valid_names(self, name):
        assert is_valid_item_name(name)

    @pytest.mark.parametrize(
        "name",
        [
            "",
            None,
            "2024030112000",  # 13 digits
            "202403011200000",  # 15 digits
            "40000101000000",  # year 4000
            "2024-03-01T1200",
            "../etc/passwd00",
        ],
    )
    def test_invalid_names(self, name):
        assert not is_valid_item_name(name)


class TestMasking:
    def test_long_token_truncated(self):
        assert mask_token("abcdefghijklmnop") == "abcdefgh..."

    def test_short_token_unchanged(self):
        assert mask_token("abc") == "abc"

    def test_empty(self):
        assert mask_token("") == ""
