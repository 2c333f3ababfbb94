from __future__ import annotations

from datetime import datetime, timezone

import pytest

from featurestore.errors import QueryReturnedNoResults
from featurestore.tables.baseline_status import (
    BaselineStatus,
    FeatureBaselineStatus,
    get_feature_baseline_status,
    upsert_feature_baseline_status,
)
from featurestore.tables.web_features import WebFeature, upsert_web_feature

LOW = datetime(2023, 3, 1, tzinfo=timezone.utc)
HIGH = datetime(2025, 9, 1, tzinfo=timezone.utc)


def test_none_fields_preserve_existing(client) -> None:
    upsert_web_feature(client, WebFeature("grid", name="Grid"))
    upsert_feature_baseline_status(client, "grid", FeatureBaselineStatus(status=BaselineStatus.LOW, low_date=LOW))
    upsert_feature_baseline_status(client, "grid", FeatureBaselineStatus(status=BaselineStatus.HIGH, high_date=HIGH))

    assert get_feature_baseline_status(client, "grid") == FeatureBaselineStatus(
        status=BaselineStatus.HIGH, low_date=LOW, high_date=HIGH
    )


def test_unknown_feature_raises_not_found(client) -> None:
    with pytest.raises(QueryReturnedNoResults):
        upsert_feature_baseline_status(client, "nope", FeatureBaselineStatus(status=BaselineStatus.NONE))


def test_feature_without_status_raises_not_found(client) -> None:
    upsert_web_feature(client, WebFeature("grid", name="Grid"))
    with pytest.raises(QueryReturnedNoResults):
        get_feature_baseline_status(client, "grid")
