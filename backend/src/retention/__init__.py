"""Data retention lifecycle for user banking data.

This module provides:
- Retention policy thresholds and per-kind dispositions
- Per-user retention settings
- Manifest-driven cascading deletion of a user and its dependents
- The user lifecycle (warning, marking, closure, cancellation, deletion)
- Daily, weekly and monthly sweeps
- Deletion verification, compliance audits and data export
- An append-only ledger of every retention action
"""

from .exceptions import (
    RetentionError,
    NotFound,
    UserNotFound,
    ConnectionNotFound,
    NotMarkedForDeletion,
    ExpiredGracePeriod,
    DeletionFailed,
    DeletionTimeout,
    ManifestError,
)
from .policy import Disposition, RetentionPolicy, RetentionSettingsUpdate, UserRetentionSettings

# Service and tasks are imported lazily to avoid circular dependencies
# Use: from retention.service import RetentionService, build_retention_components
# Use: from retention.tasks import retention_daily_task

__all__ = [
    "RetentionError",
    "NotFound",
    "UserNotFound",
    "ConnectionNotFound",
    "NotMarkedForDeletion",
    "ExpiredGracePeriod",
    "DeletionFailed",
    "DeletionTimeout",
    "ManifestError",
    "Disposition",
    "RetentionPolicy",
    "RetentionSettingsUpdate",
    "UserRetentionSettings",
]
