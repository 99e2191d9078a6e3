"""Retention policy: thresholds and per-kind dispositions.

The thresholds are validated with the same bounds the admin settings use
(minimum 1 day, maximum 10 years). Dispositions are static: every kind is
hard-deleted except the admin audit trail, which is anonymized.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import Settings


class Disposition(str, Enum):
    HARD_DELETE = "hard_delete"
    ANONYMIZE = "anonymize"


# Kinds preserved (anonymized) when their actor is erased
ANONYMIZED_KINDS = frozenset({"admin_log"})


class RetentionPolicy(BaseModel):
    """Retention periods in days.

    Default periods:
    - Access tokens: 7 days after expiry
    - Refresh tokens: 30 days after expiry
    - Revoked tokens: 90 days after revocation
    - Inactivity warning: 365 days without login
    - Grace period: 90 days after the warning threshold
    - Deletion period: 30 days after an account is marked for deletion
    - Transactions: 730 days (2 years)
    - Insights and query history: 365 days
    - Disconnected bank connections: 30 days after disconnection
    """

    model_config = ConfigDict(frozen=True)

    access_token_days: int = Field(
        default=7, ge=1, le=365,
        description="Days after expiry before an access token is deleted (1-365)"
    )
    refresh_token_days: int = Field(
        default=30, ge=1, le=365,
        description="Days after expiry before a refresh token is deleted (1-365)"
    )
    revoked_token_days: int = Field(
        default=90, ge=1, le=365,
        description="Days after revocation before a token is deleted (1-365)"
    )

    warning_period_days: int = Field(
        default=365, ge=30, le=3650,
        description="Days without login before the inactivity warning (30-3650)"
    )
    grace_period_days: int = Field(
        default=90, ge=1, le=365,
        description="Days after the warning threshold before marking for deletion (1-365)"
    )
    deletion_period_days: int = Field(
        default=30, ge=1, le=365,
        description="Days between marking and deletion; cancellation window (1-365)"
    )

    transaction_retention_days: int = Field(
        default=730, ge=30, le=3650,
        description="Transaction retention period in days (30-3650)"
    )
    insight_retention_days: int = Field(
        default=365, ge=30, le=3650,
        description="Insight metric and query history retention in days (30-3650)"
    )
    connection_disconnect_days: int = Field(
        default=30, ge=1, le=365,
        description="Days after disconnection before a bank connection is deleted (1-365)"
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetentionPolicy":
        return cls(
            access_token_days=settings.RETENTION_ACCESS_TOKEN_DAYS,
            refresh_token_days=settings.RETENTION_REFRESH_TOKEN_DAYS,
            revoked_token_days=settings.RETENTION_REVOKED_TOKEN_DAYS,
            warning_period_days=settings.RETENTION_WARNING_PERIOD_DAYS,
            grace_period_days=settings.RETENTION_GRACE_PERIOD_DAYS,
            deletion_period_days=settings.RETENTION_DELETION_PERIOD_DAYS,
            transaction_retention_days=settings.RETENTION_TRANSACTION_DAYS,
            insight_retention_days=settings.RETENTION_INSIGHT_DAYS,
            connection_disconnect_days=settings.RETENTION_CONNECTION_DISCONNECT_DAYS,
        )

    def disposition_for(self, kind: str) -> Disposition:
        if kind in ANONYMIZED_KINDS:
            return Disposition.ANONYMIZE
        return Disposition.HARD_DELETE

    def age_horizons(self) -> Dict[str, int]:
        """Kinds aged out independently of their owner, mapped to days."""
        return {
            "transaction": self.transaction_retention_days,
            "insight_metric": self.insight_retention_days,
            "query_history": self.insight_retention_days,
        }

    def horizon_for(self, kind: str) -> Optional[timedelta]:
        days = self.age_horizons().get(kind)
        return timedelta(days=days) if days is not None else None

    def calculate_cutoff_dates(self, now: datetime) -> Dict[str, datetime]:
        """Cutoff per rule; records older than the cutoff are expired."""
        return {
            "access_tokens": now - timedelta(days=self.access_token_days),
            "refresh_tokens": now - timedelta(days=self.refresh_token_days),
            "revoked_tokens": now - timedelta(days=self.revoked_token_days),
            "inactivity_warning": now - timedelta(days=self.warning_period_days),
            "grace_period": now - timedelta(
                days=self.warning_period_days + self.grace_period_days
            ),
            "deletion": now - timedelta(days=self.deletion_period_days),
            "disconnected_connections": now - timedelta(days=self.connection_disconnect_days),
        }

    def scheduled_deletion_date(self, marked_at: datetime) -> datetime:
        return marked_at + timedelta(days=self.deletion_period_days)


class UserRetentionSettings(BaseModel):
    """A user's own retention choices, stored in user.data_retention_preferences.

    Horizons use the same bounds as the store-wide policy (30 days to 10
    years). Keys missing from the stored JSON take the defaults.
    """

    model_config = ConfigDict(frozen=True)

    transaction_retention_days: int = Field(
        default=730, ge=30, le=3650,
        description="Transaction retention period in days (30-3650)"
    )
    insight_retention_days: int = Field(
        default=365, ge=30, le=3650,
        description="Insight retention period in days (30-3650)"
    )
    email_notifications: bool = Field(
        default=True,
        description="Whether retention notices may be sent by email"
    )
    analytical_data_use: bool = Field(
        default=True,
        description="Whether the user's data may feed aggregate analytics"
    )

    @classmethod
    def from_stored(cls, stored: Optional[Dict[str, Any]]) -> "UserRetentionSettings":
        known = {key: value for key, value in (stored or {}).items() if key in cls.model_fields}
        return cls(**known)

    def apply(self, update: "RetentionSettingsUpdate") -> "UserRetentionSettings":
        """Validated copy with the fields set in `update` replaced."""
        return UserRetentionSettings.model_validate(
            {**self.model_dump(), **update.model_dump(exclude_none=True)}
        )


class RetentionSettingsUpdate(BaseModel):
    """Partial update of UserRetentionSettings; None keeps the current value."""

    model_config = ConfigDict(extra="forbid")

    transaction_retention_days: Optional[int] = Field(default=None, ge=30, le=3650)
    insight_retention_days: Optional[int] = Field(default=None, ge=30, le=3650)
    email_notifications: Optional[bool] = None
    analytical_data_use: Optional[bool] = None
