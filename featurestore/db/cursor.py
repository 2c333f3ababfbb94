"""
Opaque pagination cursors.

A cursor is a dataclass holding the last-seen sort key(s) of a page, plus
any running aggregate the next page needs. It travels to callers as compact
JSON encoded with URL-safe base64 without padding.

    token = encode_cursor(WptRunCursor(last_time_start=t, last_run_id=42))
    cursor = decode_cursor(WptRunCursor, token)
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import types
import typing
from datetime import date, datetime
from typing import Any, TypeVar

from ..errors import InvalidCursorFormat

C = TypeVar("C")


def _to_json(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def encode_cursor(cursor: Any) -> str:
    if not dataclasses.is_dataclass(cursor) or isinstance(cursor, type):
        raise TypeError(f"cursor must be a dataclass instance, got {type(cursor).__name__}")
    payload = {f.name: _to_json(getattr(cursor, f.name)) for f in dataclasses.fields(cursor)}
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0], True
    return annotation, False


def _coerce(annotation: Any, value: Any) -> Any:
    target, optional = _unwrap_optional(annotation)
    if value is None:
        if optional:
            return None
        raise ValueError("null value for a required field")

    # bool is checked before int since bool is an int subclass.
    if target is bool:
        if not isinstance(value, bool):
            raise ValueError(f"expected bool, got {type(value).__name__}")
        return value
    if target is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"expected int, got {type(value).__name__}")
        return value
    if target is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected float, got {type(value).__name__}")
        return float(value)
    if target is str:
        if not isinstance(value, str):
            raise ValueError(f"expected str, got {type(value).__name__}")
        return value
    if target is datetime:
        if not isinstance(value, str):
            raise ValueError("expected ISO datetime string")
        return datetime.fromisoformat(value)
    if target is date:
        if not isinstance(value, str):
            raise ValueError("expected ISO date string")
        return date.fromisoformat(value)
    raise TypeError(f"unsupported cursor field type {target!r}")


def decode_cursor(cls: type[C], token: str) -> C:
    """
    Decode a token produced by encode_cursor for the same cursor class.

    Raises:
        InvalidCursorFormat: If the token is not base64, not a JSON object,
            or its fields do not match ``cls`` exactly
    """
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError, AttributeError) as exc:
        raise InvalidCursorFormat(f"cursor is not valid encoded JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidCursorFormat("cursor payload is not an object")

    hints = typing.get_type_hints(cls)
    fields = {f.name for f in dataclasses.fields(cls)}
    if set(payload) != fields:
        raise InvalidCursorFormat(
            f"cursor fields {sorted(payload)} do not match {cls.__name__} fields {sorted(fields)}"
        )

    try:
        values = {name: _coerce(hints[name], payload[name]) for name in fields}
    except ValueError as exc:
        raise InvalidCursorFormat(f"bad {cls.__name__} cursor: {exc}") from exc
    return cls(**values)
