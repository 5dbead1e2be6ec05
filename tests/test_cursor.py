import base64
import json

import pytest

from clipsync.utils.cursor import Cursor, CursorError, decode_cursor, encode_cursor, parse_since


def _token(doc) -> str:
    return base64.urlsafe_b64encode(json.dumps(doc).encode()).decode().rstrip("=")


def test_cursor_survives_encoding():
    cursor = Cursor(server_updated_at=1_700_000_000_123, id="c_01HZXY")
    token = encode_cursor(cursor)
    assert "=" not in token
    assert decode_cursor(token) == cursor


def test_cursors_order_by_timestamp_then_id():
    assert Cursor(5, "b") < Cursor(6, "a")
    assert Cursor(5, "a") < Cursor(5, "b")


@pytest.mark.parametrize("token", [
    "",
    "not-base64!!",
    _token(["v", 1]),
    _token({"v": 2, "t": 1, "id": "x"}),
    _token({"v": 1, "t": -1, "id": "x"}),
    _token({"v": 1, "t": "12", "id": "x"}),
    _token({"v": 1, "t": True, "id": "x"}),
    _token({"v": 1, "t": 12, "id": ""}),
    _token({"v": 1, "t": 12}),
])
def test_invalid_tokens_are_rejected(token):
    with pytest.raises(CursorError):
        decode_cursor(token)


def test_parse_since_accepts_tokens_and_legacy_numbers():
    assert parse_since(None) is None
    assert parse_since("") is None
    assert parse_since("1234") == 1234
    cursor = Cursor(99, "c_1")
    assert parse_since(encode_cursor(cursor)) == cursor
    with pytest.raises(CursorError):
        parse_since("-5")


@pytest.mark.parametrize("raw", ["²", "١٢٣", "12³"])
def test_parse_since_rejects_non_ascii_digits(raw):
    with pytest.raises(CursorError):
        parse_since(raw)
