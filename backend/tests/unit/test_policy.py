"""Unit tests for retention policy thresholds and dispositions."""

import pytest
from datetime import datetime, timedelta
from pydantic import ValidationError

from config import Settings
from retention.policy import (
    ANONYMIZED_KINDS,
    Disposition,
    RetentionPolicy,
    RetentionSettingsUpdate,
    UserRetentionSettings,
)


class TestRetentionPolicy:
    """Test RetentionPolicy validation."""

    def test_default_values(self):
        policy = RetentionPolicy()

        assert policy.access_token_days == 7
        assert policy.refresh_token_days == 30
        assert policy.revoked_token_days == 90
        assert policy.warning_period_days == 365
        assert policy.grace_period_days == 90
        assert policy.deletion_period_days == 30
        assert policy.transaction_retention_days == 730
        assert policy.insight_retention_days == 365
        assert policy.connection_disconnect_days == 30

    def test_minimum_validation(self):
        with pytest.raises(ValidationError) as exc:
            RetentionPolicy(deletion_period_days=0)

        assert "greater than or equal to 1" in str(exc.value)

    def test_maximum_validation(self):
        with pytest.raises(ValidationError) as exc:
            RetentionPolicy(transaction_retention_days=3651)

        assert "less than or equal to 3650" in str(exc.value)

    def test_policy_is_frozen(self):
        policy = RetentionPolicy()

        with pytest.raises(ValidationError):
            policy.grace_period_days = 10

    def test_from_settings(self):
        settings = Settings(
            RETENTION_WARNING_PERIOD_DAYS=180,
            RETENTION_DELETION_PERIOD_DAYS=14,
            RETENTION_TRANSACTION_DAYS=365,
        )

        policy = RetentionPolicy.from_settings(settings)

        assert policy.warning_period_days == 180
        assert policy.deletion_period_days == 14
        assert policy.transaction_retention_days == 365
        assert policy.access_token_days == settings.RETENTION_ACCESS_TOKEN_DAYS

    def test_from_settings_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            RetentionPolicy.from_settings(Settings(RETENTION_GRACE_PERIOD_DAYS=0))


class TestDispositions:
    def test_admin_log_is_anonymized(self):
        policy = RetentionPolicy()

        assert policy.disposition_for("admin_log") == Disposition.ANONYMIZE
        assert "admin_log" in ANONYMIZED_KINDS

    @pytest.mark.parametrize("kind", ["user", "client", "token", "transaction", "insight_metric"])
    def test_everything_else_is_hard_deleted(self, kind):
        assert RetentionPolicy().disposition_for(kind) == Disposition.HARD_DELETE

    def test_age_horizons(self):
        policy = RetentionPolicy(transaction_retention_days=800)

        assert policy.age_horizons() == {
            "transaction": 800,
            "insight_metric": 365,
            "query_history": 365,
        }
        assert policy.horizon_for("transaction") == timedelta(days=800)
        assert policy.horizon_for("client") is None


class TestCutoffDates:
    def test_cutoffs(self):
        now = datetime(2025, 6, 1)
        cutoffs = RetentionPolicy().calculate_cutoff_dates(now)

        assert cutoffs["access_tokens"] == now - timedelta(days=7)
        assert cutoffs["refresh_tokens"] == now - timedelta(days=30)
        assert cutoffs["revoked_tokens"] == now - timedelta(days=90)
        assert cutoffs["inactivity_warning"] == now - timedelta(days=365)
        assert cutoffs["grace_period"] == now - timedelta(days=455)
        assert cutoffs["deletion"] == now - timedelta(days=30)
        assert cutoffs["disconnected_connections"] == now - timedelta(days=30)

    def test_scheduled_deletion_date(self):
        marked = datetime(2025, 1, 1, 8, 30)

        assert RetentionPolicy().scheduled_deletion_date(marked) == datetime(2025, 1, 31, 8, 30)


class TestUserRetentionSettings:
    def test_defaults(self):
        settings = UserRetentionSettings()

        assert settings.transaction_retention_days == 730
        assert settings.insight_retention_days == 365
        assert settings.email_notifications is True
        assert settings.analytical_data_use is True

    def test_from_stored_fills_missing_keys(self):
        settings = UserRetentionSettings.from_stored({"insight_retention_days": 90, "legacyFlag": 1})

        assert settings.insight_retention_days == 90
        assert settings.transaction_retention_days == 730

    def test_from_stored_none(self):
        assert UserRetentionSettings.from_stored(None) == UserRetentionSettings()

    def test_apply_only_replaces_given_fields(self):
        current = UserRetentionSettings(insight_retention_days=90)

        updated = current.apply(RetentionSettingsUpdate(email_notifications=False))

        assert updated.insight_retention_days == 90
        assert updated.email_notifications is False
        assert current.email_notifications is True

    @pytest.mark.parametrize("days", [29, 3651])
    def test_update_bounds(self, days):
        with pytest.raises(ValidationError):
            RetentionSettingsUpdate(transaction_retention_days=days)

    def test_update_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            RetentionSettingsUpdate.model_validate({"keep_forever": True})
