"""Pydantic schemas for retention results, reports and statistics.

This module defines retention-related schemas:
- DeletionResult: outcome of one cascading user deletion
- AccountClosureResult / CancellationResult / DisconnectionResult: lifecycle results
- RetentionSettingsView: a user's retention settings and deletion schedule
- VerificationReport: post-deletion completeness check
- ComplianceAuditReport: store-wide counts of records past their horizon
- SweepStatistics: counts and errors of one scheduler sweep
- UserDataExport: portable copy of a user's data
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .policy import UserRetentionSettings


class DeletionWarning(BaseModel):
    """Non-critical failure while removing one kind; the deletion still committed."""

    kind: str = Field(description="Entity kind that failed")
    error: str = Field(description="Error message")


class DeletionResult(BaseModel):
    """Outcome of one CascadingDeletionEngine.delete_user call."""

    user_id: UUID
    per_kind_counts: Dict[str, int] = Field(
        default_factory=dict,
        description="Rows hard-deleted per entity kind"
    )
    anonymized_counts: Dict[str, int] = Field(
        default_factory=dict,
        description="Rows anonymized (preserved) per entity kind"
    )
    warnings: List[DeletionWarning] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)
    skipped: bool = Field(
        default=False,
        description="True when the user no longer existed; nothing was done"
    )

    @property
    def total_deleted(self) -> int:
        return sum(self.per_kind_counts.values())

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0


class AccountClosureResult(BaseModel):
    success: bool
    user_id: UUID
    scheduled_deletion_date: datetime


class RetentionSettingsView(BaseModel):
    """A user's retention settings together with their deletion schedule."""

    user_id: UUID
    settings: UserRetentionSettings
    status: str
    is_marked_for_deletion: bool
    marked_for_deletion_at: Optional[datetime] = None
    scheduled_deletion_date: Optional[datetime] = None


class CancellationResult(BaseModel):
    success: bool
    user_id: UUID


class DisconnectionResult(BaseModel):
    success: bool
    user_id: UUID
    connection_id: UUID
    scheduled_deletion_date: datetime


class VerificationReport(BaseModel):
    """Result of re-querying every manifest table for a deleted user."""

    user_id: UUID
    is_completely_deleted: bool
    remaining_data: Dict[str, int] = Field(
        default_factory=dict,
        description="Kinds that still hold rows for the user, with counts"
    )
    related_data: Dict[str, int] = Field(
        default_factory=dict,
        description="Preserved (anonymized) rows that still name the user"
    )
    checked_at: datetime


class ComplianceAuditReport(BaseModel):
    """Records currently past their retention horizon.

    Read-only snapshot; nothing is deleted while producing it.
    """

    expired_tokens: int = Field(default=0, ge=0)
    stale_transactions: int = Field(default=0, ge=0)
    stale_insights: int = Field(default=0, ge=0)
    inactive_accounts: int = Field(
        default=0,
        ge=0,
        description="Active users past the inactivity warning threshold"
    )
    disconnected_connections: int = Field(default=0, ge=0)
    accounts_due_for_deletion: int = Field(
        default=0,
        ge=0,
        description="Users marked for deletion whose deletion period has passed"
    )
    total_pending_deletions: int = Field(default=0, ge=0)
    audited_at: datetime


class SweepStatistics(BaseModel):
    """Statistics from one scheduler sweep.

    Tracks how many records were processed, deleted, and any errors
    encountered. Used for monitoring and alerting on sweep health.
    """

    sweep: str = Field(description="daily, weekly or monthly")
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = Field(default=0.0, ge=0.0)

    deleted: Dict[str, int] = Field(
        default_factory=dict,
        description="Rows removed per category"
    )
    accounts_deleted: int = Field(default=0, ge=0)
    accounts_marked: int = Field(default=0, ge=0)
    warnings_sent: int = Field(default=0, ge=0)
    candidates_skipped: int = Field(default=0, ge=0)
    deletion_warnings: int = Field(
        default=0,
        ge=0,
        description="Non-critical kind failures inside committed deletions"
    )
    errors: int = Field(default=0, ge=0)
    failed_user_ids: List[UUID] = Field(default_factory=list)
    audit: Optional[ComplianceAuditReport] = None

    @property
    def total_records_deleted(self) -> int:
        """Total number of records deleted across all categories."""
        return sum(self.deleted.values())

    @property
    def has_errors(self) -> bool:
        """Whether any candidate failed during execution."""
        return self.errors > 0

    @property
    def is_anomaly(self) -> bool:
        """Whether deletion volume exceeds normal thresholds (alert condition)."""
        return self.total_records_deleted > 10000


class UserDataExport(BaseModel):
    """Portable copy of everything stored about a user."""

    user_profile: Dict[str, Any]
    clients: List[Dict[str, Any]] = Field(default_factory=list)
    financial_data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    insights: List[Dict[str, Any]] = Field(default_factory=list)
    export_date: datetime


class PolicyStatistics(BaseModel):
    """Counts backing the admin retention overview."""

    users: Dict[str, int]
    connections: Dict[str, int]
    tokens: Dict[str, int]
    retention_log_entries: int
    recent_actions: Dict[str, int] = Field(
        default_factory=dict,
        description="Ledger actions of the last 30 days, by action"
    )
    generated_at: datetime


class PendingDeletion(BaseModel):
    user_id: UUID
    email: str
    status: str
    deletion_reason: Optional[str] = None
    marked_for_deletion_at: datetime
    scheduled_deletion_date: datetime


class PendingDeletionPage(BaseModel):
    items: List[PendingDeletion]
    page: int = Field(ge=1)
    limit: int = Field(ge=1, le=100)
    total: int = Field(ge=0)

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit
