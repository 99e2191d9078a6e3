"""Token SQLAlchemy model"""

import uuid

from sqlalchemy import Column, Text, Boolean, DateTime, ForeignKey, CheckConstraint, Uuid

from .base import Base, utcnow


class TokenType:
    ACCESS = "access"
    REFRESH = "refresh"


class Token(Base):
    """Issued access/refresh credential.

    Expired tokens are removed a fixed number of days after expires_at,
    revoked tokens a fixed number of days after revoked_at.
    """
    __tablename__ = "token"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False, index=True)
    client_id = Column(Text, ForeignKey("client.client_id", ondelete="RESTRICT"), nullable=True, index=True)
    token_type = Column(Text, nullable=False)
    token = Column(Text, nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "token_type IN ('access', 'refresh')",
            name='ck_token_type'
        ),
    )
