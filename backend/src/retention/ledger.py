"""Append-only retention ledger.

Every policy action is written here in the same transaction as the change it
describes. Rows are never updated or deleted (see models.retention_log).

Retention Events:
- inactivity_warning_sent
- account_marked_for_deletion
- account_closure_requested
- account_deletion_cancelled
- account_deleted
- connection_disconnected
- connection_deleted
- expired_tokens_deleted
- stale_records_deleted
- data_exported
- monthly_audit
- retention_settings_updated
- admin_updated_retention_settings
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import TypeAdapter
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import RetentionLog, utcnow

logger = logging.getLogger(__name__)

_DETAILS = TypeAdapter(Dict[str, Any])


class RetentionAction:
    INACTIVITY_WARNING_SENT = "inactivity_warning_sent"
    ACCOUNT_MARKED_FOR_DELETION = "account_marked_for_deletion"
    ACCOUNT_CLOSURE_REQUESTED = "account_closure_requested"
    ACCOUNT_DELETION_CANCELLED = "account_deletion_cancelled"
    ACCOUNT_DELETED = "account_deleted"
    CONNECTION_DISCONNECTED = "connection_disconnected"
    CONNECTION_DELETED = "connection_deleted"
    EXPIRED_TOKENS_DELETED = "expired_tokens_deleted"
    STALE_RECORDS_DELETED = "stale_records_deleted"
    DATA_EXPORTED = "data_exported"
    MONTHLY_AUDIT = "monthly_audit"
    RETENTION_SETTINGS_UPDATED = "retention_settings_updated"
    ADMIN_UPDATED_RETENTION_SETTINGS = "admin_updated_retention_settings"


def record_retention_event(
    db: Session,
    action: str,
    user_id: Optional[UUID] = None,
    details: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> RetentionLog:
    """Append a ledger entry to the current transaction.

    Details are converted to JSON-safe values (datetimes become ISO strings,
    UUIDs become strings) before they are stored.
    """
    entry = RetentionLog(
        action=action,
        user_id=user_id,
        details=_DETAILS.dump_python(details, mode="json") if details is not None else None,
        timestamp=timestamp or utcnow(),
    )
    db.add(entry)
    db.flush()

    logger.info(
        f"Retention log created: {action}",
        extra={"action": action, "user_id": str(user_id) if user_id else None},
    )
    return entry


def find_retention_events(
    db: Session,
    action: Optional[str] = None,
    user_id: Optional[UUID] = None,
    since: Optional[datetime] = None,
) -> List[RetentionLog]:
    """Ledger entries matching the filters, oldest first."""
    stmt = select(RetentionLog)
    if action is not None:
        stmt = stmt.where(RetentionLog.action == action)
    if user_id is not None:
        stmt = stmt.where(RetentionLog.user_id == user_id)
    if since is not None:
        stmt = stmt.where(RetentionLog.timestamp >= since)
    stmt = stmt.order_by(RetentionLog.timestamp.asc())
    return list(db.execute(stmt).scalars().all())


def latest_retention_event(db: Session, action: str, user_id: UUID) -> Optional[RetentionLog]:
    stmt = (
        select(RetentionLog)
        .where(RetentionLog.action == action, RetentionLog.user_id == user_id)
        .order_by(RetentionLog.timestamp.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()
