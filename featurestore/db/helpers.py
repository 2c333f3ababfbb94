from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ..errors import FeaturestoreError, InternalQueryFailure

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_MAX_IDENTIFIER_LENGTH = 128

T = TypeVar("T", date, datetime)


def _validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (table/column name) is safe to reference.

    Spanner, MySQL and PostgreSQL all accept more than this, but we restrict
    to alphanumeric + underscore so mutations can never smuggle SQL through
    a table or column name.

    ⚠️ SECURITY CONTRACT ⚠️
    Identifiers MUST be trusted (hardcoded in a mapper or schema module),
    never taken from request input.

    Args:
        name: The identifier to validate
        identifier_type: Description of the identifier (for error messages)

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        TypeError: If identifier is not a string
        ValueError: If identifier contains unsafe characters or is invalid

    Example:
        >>> _validate_identifier("WebFeatures", "table")
        'WebFeatures'
        >>> _validate_identifier("'; DROP TABLE--", "table")
        ValueError: Invalid table '; DROP TABLE--': ...
    """
    if not isinstance(name, str):
        raise TypeError(f"{identifier_type} must be a string, got {type(name).__name__}")

    if not name:
        raise ValueError(f"{identifier_type} cannot be empty")

    if not _IDENTIFIER_RE.match(name):
        raise ValueError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )

    if len(name) > _MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"{identifier_type} {name!r} exceeds the {_MAX_IDENTIFIER_LENGTH}-character limit"
        )

    return name


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """
    Wrap engine errors raised inside the block in InternalQueryFailure.

    Featurestore errors (not found, lock outcomes, quota) pass through
    unchanged so callers can branch on them.
    """
    try:
        yield
    except FeaturestoreError:
        raise
    except SQLAlchemyError as exc:
        logger.error("engine failure during %s: %s", operation, exc)
        raise InternalQueryFailure(operation, exc) from exc


def is_newer(existing: T | None, candidate: T) -> bool:
    """
    The one "latest-if-newer" rule used for every latest-pointer table.

    A missing existing value is always replaced; otherwise the candidate
    must be strictly later. Equal values are not newer, so replaying the
    same data does not rewrite the pointer.
    """
    if existing is None:
        return True
    return candidate > existing


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime read back from the engine to aware UTC.

    Dialects without timezone support (SQLite, MySQL DATETIME) return naive
    values; everything this package writes is UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
