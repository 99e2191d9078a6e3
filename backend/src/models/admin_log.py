"""AdminLog SQLAlchemy model"""

import uuid

from sqlalchemy import Column, Text, DateTime, ForeignKey, Index, Uuid

from .base import Base, PortableJSONB, utcnow


class AdminLog(Base):
    """Immutable log of administrative actions.

    Rows survive the deletion of their actor: admin_id is re-pointed at the
    system sentinel and the erased id moves to original_admin_id.
    """
    __tablename__ = "admin_log"
    __table_args__ = (
        Index("ix_admin_log_admin_id", "admin_id"),
        Index("ix_admin_log_original_admin_id", "original_admin_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id = Column(Uuid, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False)
    original_admin_id = Column(Uuid, nullable=True)
    action = Column(Text, nullable=False)
    details = Column(PortableJSONB, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        """Convert admin log entry to dictionary representation"""
        return {
            "id": str(self.id),
            "admin_id": str(self.admin_id),
            "original_admin_id": str(self.original_admin_id) if self.original_admin_id else None,
            "action": self.action,
            "details": self.details,
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat(),
        }
