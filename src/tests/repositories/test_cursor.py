"""Test cursor token encodings."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from contentcore.repositories.cursor import (
    CursorToken,
    InvalidCursorError,
    PlainCursorCodec,
    SignedCursorCodec,
    codec_from_settings,
)

TOKENS = [
    CursorToken("created_at", "DESC", datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), 16),
    CursorToken("created_at", "ASC", datetime(2024, 1, 1, 12, 0), 3),
    CursorToken("title", "ASC", "Zürich", "a1b2"),
    CursorToken("published_on", "DESC", date(2023, 12, 31), 9),
    CursorToken("price", "ASC", Decimal("19.99"), 1),
    CursorToken("view_count", "DESC", None, 2),
]


class TestPlainCursorCodec:
    """Unsigned cursors degrade to "no cursor" on bad input."""

    @pytest.mark.parametrize("token", TOKENS)
    def test_round_trip(self, token: CursorToken) -> None:
        codec = PlainCursorCodec()

        assert codec.decode(codec.encode(token)) == token

    def test_encoding_is_url_safe(self) -> None:
        cursor = PlainCursorCodec().encode(TOKENS[2])

        assert all(ch.isalnum() or ch in "-_" for ch in cursor)

    @pytest.mark.parametrize(
        "cursor",
        [
            "not base64 at all!",
            "e30",  # {}
            "W10",  # []
            "eyJzb3J0X2ZpZWxkIjoxfQ",  # {"sort_field":1}
            "ü",
            "",
        ],
    )
    def test_malformed_cursor_decodes_to_none(self, cursor: str) -> None:
        assert PlainCursorCodec().decode(cursor) is None


class TestSignedCursorCodec:
    """Signed cursors reject anything the server did not issue."""

    @pytest.fixture
    def codec(self) -> SignedCursorCodec:
        return SignedCursorCodec("secret")

    @pytest.mark.parametrize("token", TOKENS)
    def test_round_trip(self, codec: SignedCursorCodec, token: CursorToken) -> None:
        assert codec.decode(codec.encode(token)) == token

    def test_format_is_data_dot_signature(self, codec: SignedCursorCodec) -> None:
        data, signature = codec.encode(TOKENS[0]).split(".")

        assert PlainCursorCodec().decode(data) == TOKENS[0]
        assert signature

    def test_any_single_character_flip_is_rejected(self, codec: SignedCursorCodec) -> None:
        cursor = codec.encode(TOKENS[0])

        for index, original in enumerate(cursor):
            replacement = "A" if original != "A" else "B"
            tampered = cursor[:index] + replacement + cursor[index + 1:]
            with pytest.raises(InvalidCursorError):
                codec.decode(tampered)

    def test_other_secret_rejected(self, codec: SignedCursorCodec) -> None:
        cursor = SignedCursorCodec("another-secret").encode(TOKENS[0])

        with pytest.raises(InvalidCursorError):
            codec.decode(cursor)

    def test_unsigned_cursor_rejected(self, codec: SignedCursorCodec) -> None:
        with pytest.raises(InvalidCursorError):
            codec.decode(PlainCursorCodec().encode(TOKENS[0]))

    @pytest.mark.parametrize("cursor", ["", ".", "a.b.c", "abc.", ".abc", "ü.ü"])
    def test_malformed_cursor_rejected(self, codec: SignedCursorCodec, cursor: str) -> None:
        with pytest.raises(InvalidCursorError):
            codec.decode(cursor)

    def test_empty_secret_not_allowed(self) -> None:
        with pytest.raises(ValueError):
            SignedCursorCodec("")


class TestCodecFromSettings:
    def test_signed_by_default(self) -> None:
        assert isinstance(codec_from_settings(), SignedCursorCodec)

    def test_plain_when_signing_disabled(self) -> None:
        with patch("contentcore.repositories.cursor.settings") as mock_settings:
            mock_settings.cursor_signed = False

            assert isinstance(codec_from_settings(), PlainCursorCodec)
