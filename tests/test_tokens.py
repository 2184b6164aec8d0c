"""
Unit tests for share token generation.
"""
import re

import pytest

from proofpay.core.tokens import generate_share_token, token_preview

URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


class TestGenerateShareToken:
    """Test suite for generate_share_token."""

    @pytest.mark.unit
    def test_default_length(self) -> None:
        assert len(generate_share_token()) == 16

    @pytest.mark.unit
    @pytest.mark.parametrize("length", [8, 16, 24, 32])
    def test_custom_length(self, length: int) -> None:
        assert len(generate_share_token(length)) == length

    @pytest.mark.unit
    def test_url_safe_alphabet(self) -> None:
        for _ in range(200):
            assert URL_SAFE.match(generate_share_token())

    @pytest.mark.unit
    def test_tokens_are_distinct(self) -> None:
        tokens = {generate_share_token() for _ in range(1000)}
        assert len(tokens) == 1000

    @pytest.mark.unit
    def test_rejects_non_positive_length(self) -> None:
        with pytest.raises(ValueError):
            generate_share_token(0)


class TestTokenPreview:
    """Tokens are only ever logged as a short prefix."""

    @pytest.mark.unit
    def test_preview_keeps_four_characters(self) -> None:
        assert token_preview("abcdefghijklmnop") == "abcd..."

    @pytest.mark.unit
    def test_preview_of_empty_token(self) -> None:
        assert token_preview(None) == ""
        assert token_preview("") == ""
