"""RetentionLog SQLAlchemy model"""

import uuid

from sqlalchemy import Column, Text, DateTime, Index, Uuid, event

from .base import Base, PortableJSONB, utcnow


class RetentionLog(Base):
    """Append-only ledger of every retention policy action.

    user_id is a plain column (no foreign key): ledger rows outlive the
    users they describe.
    """
    __tablename__ = "retention_log"
    __table_args__ = (
        Index("ix_retention_log_action", "action"),
        Index("ix_retention_log_user_id", "user_id"),
        Index("ix_retention_log_timestamp", "timestamp"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action = Column(Text, nullable=False)
    user_id = Column(Uuid, nullable=True)
    details = Column(PortableJSONB, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "action": self.action,
            "user_id": str(self.user_id) if self.user_id else None,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class RetentionLogImmutableError(Exception):
    """Raised when code tries to modify or remove a ledger row."""


@event.listens_for(RetentionLog, "before_update")
def _reject_update(mapper, connection, target):
    raise RetentionLogImmutableError(f"RetentionLog {target.id} is append-only")


@event.listens_for(RetentionLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise RetentionLogImmutableError(f"RetentionLog {target.id} is append-only")
