from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import date, datetime, timezone

import pytest

from featurestore.db.cursor import decode_cursor, encode_cursor
from featurestore.errors import InvalidCursorFormat


@dataclass
class RunCursor:
    last_time_start: datetime
    last_run_id: int


@dataclass
class MixedCursor:
    name: str
    day: date
    rate: float
    flag: bool
    note: str | None = None


def _token(payload) -> str:
    raw = json.dumps(payload).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def test_round_trip_preserves_values() -> None:
    cursor = RunCursor(last_time_start=datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc), last_run_id=42)
    assert decode_cursor(RunCursor, encode_cursor(cursor)) == cursor


def test_round_trip_of_mixed_field_types() -> None:
    cursor = MixedCursor(name="grid", day=date(2024, 1, 31), rate=0.25, flag=True)
    assert decode_cursor(MixedCursor, encode_cursor(cursor)) == cursor


def test_token_is_url_safe_without_padding() -> None:
    token = encode_cursor(MixedCursor(name="??>>", day=date(2024, 1, 1), rate=1.0, flag=False))
    assert "=" not in token
    assert "+" not in token and "/" not in token


def test_encoding_is_deterministic() -> None:
    cursor = RunCursor(last_time_start=datetime(2024, 3, 1, tzinfo=timezone.utc), last_run_id=1)
    assert encode_cursor(cursor) == encode_cursor(RunCursor(cursor.last_time_start, cursor.last_run_id))


def test_encode_rejects_non_dataclass() -> None:
    with pytest.raises(TypeError):
        encode_cursor({"last_run_id": 1})


@pytest.mark.parametrize(
    "token",
    [
        "not base64 !!",
        _token([1, 2, 3]),
        base64.urlsafe_b64encode(b"{not json").decode("ascii"),
    ],
)
def test_malformed_tokens_are_rejected(token: str) -> None:
    with pytest.raises(InvalidCursorFormat):
        decode_cursor(RunCursor, token)


def test_missing_field_is_rejected() -> None:
    with pytest.raises(InvalidCursorFormat):
        decode_cursor(RunCursor, _token({"last_run_id": 1}))


def test_extra_field_is_rejected() -> None:
    token = _token({"last_run_id": 1, "last_time_start": "2024-01-01T00:00:00+00:00", "x": 1})
    with pytest.raises(InvalidCursorFormat):
        decode_cursor(RunCursor, token)


def test_cursor_of_another_shape_is_rejected() -> None:
    other = encode_cursor(MixedCursor(name="a", day=date(2024, 1, 1), rate=1.0, flag=True))
    with pytest.raises(InvalidCursorFormat):
        decode_cursor(RunCursor, other)


@pytest.mark.parametrize(
    "payload",
    [
        {"last_run_id": "1", "last_time_start": "2024-01-01T00:00:00+00:00"},
        {"last_run_id": True, "last_time_start": "2024-01-01T00:00:00+00:00"},
        {"last_run_id": 1, "last_time_start": "yesterday"},
        {"last_run_id": None, "last_time_start": "2024-01-01T00:00:00+00:00"},
    ],
)
def test_wrong_field_types_are_rejected(payload) -> None:
    with pytest.raises(InvalidCursorFormat):
        decode_cursor(RunCursor, _token(payload))


def test_optional_field_accepts_null() -> None:
    token = _token({"name": "a", "day": "2024-01-01", "rate": 2, "flag": False, "note": None})
    decoded = decode_cursor(MixedCursor, token)
    assert decoded.note is None
    assert decoded.rate == 2.0
