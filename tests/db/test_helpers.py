from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from featurestore.db.helpers import _validate_identifier, as_utc, is_newer, translate_errors
from featurestore.errors import InternalQueryFailure, QueryReturnedNoResults


class TestIsNewer:
    def test_missing_existing_is_always_replaced(self) -> None:
        assert is_newer(None, date(1970, 1, 1)) is True

    def test_strictly_later_is_newer(self) -> None:
        assert is_newer(date(2024, 1, 1), date(2024, 1, 2)) is True

    def test_equal_is_not_newer(self) -> None:
        assert is_newer(date(2024, 1, 1), date(2024, 1, 1)) is False

    def test_earlier_is_not_newer(self) -> None:
        assert is_newer(date(2024, 1, 2), date(2024, 1, 1)) is False


class TestAsUtc:
    def test_naive_is_taken_as_utc(self) -> None:
        assert as_utc(datetime(2024, 1, 1, 12)) == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

    def test_aware_is_converted(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        converted = as_utc(datetime(2024, 1, 1, 14, tzinfo=plus_two))
        assert converted == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
        assert converted.tzinfo == timezone.utc

    def test_none_passes_through(self) -> None:
        assert as_utc(None) is None


class TestTranslateErrors:
    def test_engine_error_is_wrapped_with_cause(self) -> None:
        cause = OperationalError("SELECT 1", {}, Exception("connection reset"))
        with pytest.raises(InternalQueryFailure) as excinfo:
            with translate_errors("read WebFeatures"):
                raise cause
        assert excinfo.value.cause is cause
        assert excinfo.value.__cause__ is cause
        assert "read WebFeatures" in str(excinfo.value)

    def test_featurestore_errors_pass_through(self) -> None:
        with pytest.raises(QueryReturnedNoResults):
            with translate_errors("read"):
                raise QueryReturnedNoResults("missing")

    def test_other_errors_are_untouched(self) -> None:
        with pytest.raises(KeyError):
            with translate_errors("read"):
                raise KeyError("x")


class TestValidateIdentifier:
    def test_valid_identifier_is_returned(self) -> None:
        assert _validate_identifier("WebFeatures", "table") == "WebFeatures"

    @pytest.mark.parametrize("name", ["", "1abc", "a-b", "a b", "x" * 129, "'; DROP TABLE--"])
    def test_invalid_identifiers(self, name: str) -> None:
        with pytest.raises(ValueError):
            _validate_identifier(name, "table")

    def test_non_string_is_type_error(self) -> None:
        with pytest.raises(TypeError):
            _validate_identifier(123, "table")  # type: ignore[arg-type]
