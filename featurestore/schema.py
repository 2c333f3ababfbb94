"""
Table definitions.

Mirrors the production schema closely enough for every mapper in
``featurestore.tables``; migrations are managed outside this package and
``metadata.create_all`` is only used for tests and local development.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Float,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()

web_features = Table(
    "WebFeatures",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("feature_key", String(64), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
    Column("description", String(2048), nullable=False, default=""),
    Column("description_html", String(4096), nullable=False, default=""),
)

browser_releases = Table(
    "BrowserReleases",
    metadata,
    Column("browser_name", String(64), primary_key=True),
    Column("browser_version", String(8), primary_key=True),
    Column("release_date", DateTime(timezone=True), nullable=False),
)

browser_feature_availabilities = Table(
    "BrowserFeatureAvailabilities",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("browser_name", String(64), primary_key=True),
    Column("browser_version", String(8), nullable=False),
)

feature_baseline_status = Table(
    "FeatureBaselineStatus",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("status", String(16), nullable=True),
    Column("low_date", DateTime(timezone=True), nullable=True),
    Column("high_date", DateTime(timezone=True), nullable=True),
)

browser_feature_support_events = Table(
    "BrowserFeatureSupportEvents",
    metadata,
    Column("target_browser_name", String(64), primary_key=True),
    Column("event_browser_name", String(64), primary_key=True),
    Column("event_release_date", DateTime(timezone=True), primary_key=True),
    Column("web_feature_id", String(36), primary_key=True),
    Column("support_status", String(32), nullable=False),
)

wpt_runs = Table(
    "WPTRuns",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("external_run_id", BigInteger, nullable=False, unique=True),
    Column("time_start", DateTime(timezone=True), nullable=False),
    Column("time_end", DateTime(timezone=True), nullable=False),
    Column("browser_name", String(64), nullable=False),
    Column("browser_version", String(32), nullable=False),
    Column("channel", String(32), nullable=False),
    Column("os_name", String(64), nullable=False, default=""),
    Column("os_version", String(32), nullable=False, default=""),
    Column("full_revision_hash", String(40), nullable=False, default=""),
)

wpt_run_feature_metrics = Table(
    "WPTRunFeatureMetrics",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("web_feature_id", String(36), primary_key=True),
    Column("channel", String(32), nullable=False),
    Column("browser_name", String(64), nullable=False),
    Column("time_start", DateTime(timezone=True), nullable=False),
    Column("total_tests", BigInteger, nullable=True),
    Column("test_pass", BigInteger, nullable=True),
)

latest_wpt_run_feature_metrics = Table(
    "LatestWPTRunFeatureMetrics",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("browser_name", String(64), primary_key=True),
    Column("channel", String(32), primary_key=True),
    Column("run_metric_id", String(36), nullable=False),
    Column("time_start", DateTime(timezone=True), nullable=False),
)

saved_searches = Table(
    "SavedSearches",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(256), nullable=False),
    Column("query", String(4096), nullable=False),
    Column("description", String(1024), nullable=True),
    Column("scope", String(32), nullable=False),
    Column("author_id", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

saved_search_user_roles = Table(
    "SavedSearchUserRoles",
    metadata,
    Column("saved_search_id", String(36), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("user_role", String(32), nullable=False),
)

user_saved_search_bookmarks = Table(
    "UserSavedSearchBookmarks",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("saved_search_id", String(36), primary_key=True),
)

system_managed_saved_searches = Table(
    "SystemManagedSavedSearches",
    metadata,
    Column("feature_id", String(36), primary_key=True),
    Column("saved_search_id", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

saved_search_state = Table(
    "SavedSearchState",
    metadata,
    Column("saved_search_id", String(36), primary_key=True),
    Column("snapshot_type", String(16), primary_key=True),
    Column("last_known_state_blob_path", String(1024), nullable=True),
    Column("worker_lock_id", String(64), nullable=True),
    Column("worker_lock_expires_at", DateTime(timezone=True), nullable=True),
)

notification_channels = Table(
    "NotificationChannels",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("name", String(256), nullable=False),
    Column("type", String(16), nullable=False),
    Column("config", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

chromium_histogram_enums = Table(
    "ChromiumHistogramEnums",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("histogram_name", String(128), nullable=False, unique=True),
)

chromium_histogram_enum_values = Table(
    "ChromiumHistogramEnumValues",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("chromium_histogram_enum_id", String(36), nullable=False),
    Column("bucket_id", BigInteger, nullable=False),
    Column("label", String(256), nullable=False),
    UniqueConstraint("chromium_histogram_enum_id", "bucket_id"),
)

web_feature_chromium_histogram_enum_values = Table(
    "WebFeatureChromiumHistogramEnumValues",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("chromium_histogram_enum_value_id", String(36), nullable=False),
)

daily_chromium_histogram_metrics = Table(
    "DailyChromiumHistogramMetrics",
    metadata,
    Column("chromium_histogram_enum_value_id", String(36), primary_key=True),
    Column("day", Date, primary_key=True),
    Column("rate", Float, nullable=False),
)

latest_daily_chromium_histogram_metrics = Table(
    "LatestDailyChromiumHistogramMetrics",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("chromium_histogram_enum_value_id", String(36), primary_key=True),
    Column("day", Date, nullable=False),
)

latest_feature_developer_signals = Table(
    "LatestFeatureDeveloperSignals",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("votes", BigInteger, nullable=False),
    Column("link", String(1024), nullable=False, default=""),
)

web_features_mapping_data = Table(
    "WebFeaturesMappingData",
    metadata,
    Column("web_feature_id", String(36), primary_key=True),
    Column("vendor_positions", JSON(none_as_null=True), nullable=True),
)
