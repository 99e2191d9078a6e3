"""Insight pipeline output models.

Only the stored output of the insight pipeline lives here; rows are
aged out after their horizon and removed with their owner.
"""

import uuid

from sqlalchemy import Column, Text, Integer, Boolean, DateTime, ForeignKey, Uuid

from .base import Base, PortableJSONB, utcnow


class InsightMetric(Base):
    __tablename__ = "insight_metric"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    query_id = Column(Text, nullable=False)
    query = Column(Text, nullable=False)
    query_type = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            "query": self.query,
            "query_type": self.query_type,
            "timestamp": self.created_at.isoformat(),
        }


class QueryHistory(Base):
    __tablename__ = "query_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Text, ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False, index=True)
    query = Column(Text, nullable=False)
    response_json = Column(PortableJSONB, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class NotificationPreference(Base):
    __tablename__ = "notification_preference"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, unique=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    preferences_json = Column(PortableJSONB, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
