"""BankConnection SQLAlchemy model"""

import uuid

from sqlalchemy import Column, Text, DateTime, ForeignKey, CheckConstraint, Uuid

from .base import Base, utcnow


class ConnectionStatus:
    ACTIVE = "active"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class BankConnection(Base):
    """Link to an external bank aggregator item.

    access_token holds the aggregator secret. On disconnect it is overwritten
    with an encrypted invalidation marker, never just flagged.
    """
    __tablename__ = "bank_connection"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False, index=True)
    item_id = Column(Text, nullable=False, unique=True)
    access_token = Column(Text, nullable=False)
    institution_id = Column(Text, nullable=True)
    institution_name = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=ConnectionStatus.ACTIVE)
    last_synced_at = Column(DateTime, nullable=True)
    disconnected_at = Column(DateTime, nullable=True)
    deletion_scheduled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'error', 'disconnected')",
            name='ck_bank_connection_status'
        ),
    )
