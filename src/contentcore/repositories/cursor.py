"""Cursor tokens for keyset pagination.

A token pins the position of a row in a sorted listing: the sort column, the
scan direction, the row's sort value and its id as tiebreaker. Two encodings
share one token format:

- ``PlainCursorCodec``: URL-safe base64 of compact JSON. A cursor that cannot
  be decoded is treated as absent, so the caller gets the first page.
- ``SignedCursorCodec``: ``<data>.<signature>`` where the signature is an
  HMAC-SHA256 of the encoded data. Any mismatch raises ``InvalidCursorError``.
"""

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from decimal import InvalidOperation
from typing import Any, Protocol

from contentcore.core.config import settings
from contentcore.core.serialization import from_json_value, to_json_value
from contentcore.repositories.port import EntityId, SortOrder


class InvalidCursorError(ValueError):
    """A signed cursor failed verification or could not be parsed."""


@dataclass(frozen=True)
class CursorToken:
    """Position of a row in a listing sorted by ``(sort_field, id)``.

    ``sort_order`` is the direction to scan from this position.
    """

    sort_field: str
    sort_order: SortOrder
    sort_value: Any
    tiebreak_value: EntityId


class CursorCodec(Protocol):
    def encode(self, token: CursorToken) -> str:
        ...

    def decode(self, cursor: str) -> CursorToken | None:
        ...


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _serialize(token: CursorToken) -> str:
    payload = {
        "sort_field": token.sort_field,
        "sort_order": token.sort_order,
        "sort_value": to_json_value(token.sort_value),
        "tiebreak_value": token.tiebreak_value,
    }
    return _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))


def _deserialize(data: str) -> CursorToken:
    """Parse an encoded payload, raising ValueError/TypeError on any defect."""
    payload = json.loads(_b64decode(data).decode("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError("cursor payload must be an object")

    sort_field = payload["sort_field"]
    sort_order = payload["sort_order"]
    tiebreak = payload["tiebreak_value"]
    if not isinstance(sort_field, str) or not sort_field:
        raise TypeError("sort_field must be a non-empty string")
    if sort_order not in ("ASC", "DESC"):
        raise ValueError("sort_order must be ASC or DESC")
    if isinstance(tiebreak, bool) or not isinstance(tiebreak, (int, str)):
        raise TypeError("tiebreak_value must be an id")

    return CursorToken(
        sort_field=sort_field,
        sort_order=sort_order,
        sort_value=from_json_value(payload["sort_value"]),
        tiebreak_value=tiebreak,
    )


_DECODE_ERRORS = (ValueError, TypeError, KeyError, binascii.Error, UnicodeError, InvalidOperation)


class PlainCursorCodec:
    """Unsigned cursors; undecodable input means "no cursor"."""

    def encode(self, token: CursorToken) -> str:
        return _serialize(token)

    def decode(self, cursor: str) -> CursorToken | None:
        try:
            return _deserialize(cursor)
        except _DECODE_ERRORS:
            return None


class SignedCursorCodec:
    """HMAC-signed cursors that cannot be forged or edited by clients.

    Example:
        codec = SignedCursorCodec("secret")
        cursor = codec.encode(CursorToken("created_at", "DESC", created_at, 16))
        codec.decode(cursor)          # -> the same token
        codec.decode(cursor + "x")    # raises InvalidCursorError
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Cursor signing secret must not be empty")
        self._secret = secret.encode("utf-8")

    def _sign(self, data: str) -> str:
        return _b64encode(hmac.new(self._secret, data.encode("ascii"), hashlib.sha256).digest())

    def encode(self, token: CursorToken) -> str:
        data = _serialize(token)
        return f"{data}.{self._sign(data)}"

    def decode(self, cursor: str) -> CursorToken:
        parts = cursor.split(".")
        if len(parts) != 2 or not all(parts):
            raise InvalidCursorError("Malformed cursor")
        data, signature = parts
        try:
            expected = self._sign(data)
        except UnicodeError as e:
            raise InvalidCursorError("Malformed cursor") from e
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            raise InvalidCursorError("Cursor signature mismatch")
        try:
            return _deserialize(data)
        except _DECODE_ERRORS as e:
            raise InvalidCursorError("Malformed cursor payload") from e


def codec_from_settings() -> CursorCodec:
    """The cursor codec selected by configuration."""
    if settings.cursor_signed:
        return SignedCursorCodec(settings.cursor_hmac_secret)
    return PlainCursorCodec()
