"""User and Client SQLAlchemy models"""

import re
import uuid

from sqlalchemy import Column, Text, Integer, DateTime, ForeignKey, CheckConstraint, Uuid
from sqlalchemy.orm import Session, relationship, validates

from .base import Base, PortableJSONB, utcnow

# Fixed identity that replaces a deleted user's id in preserved admin logs
SYSTEM_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
SYSTEM_USER_EMAIL = "system.deleted.admin@internal.system"


class UserStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"


class DeletionReason:
    INACTIVITY = "inactivity"
    USER_REQUEST = "user_request"


class ClientStatus:
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class User(Base):
    """Root identity of every retention cascade.

    Lifecycle columns (status, marked_for_deletion_at, inactivity_warning_date,
    deletion_reason) are only written by the lifecycle state machine.
    """
    __tablename__ = "user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, unique=True)
    client_name = Column(Text, nullable=False)
    role = Column(Text, nullable=False, default="user")
    status = Column(Text, nullable=False, default=UserStatus.ACTIVE)
    last_login_at = Column(DateTime, nullable=True)
    marked_for_deletion_at = Column(DateTime, nullable=True)
    inactivity_warning_date = Column(DateTime, nullable=True)
    deletion_reason = Column(Text, nullable=True)
    data_retention_preferences = Column(PortableJSONB, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    clients = relationship(
        "Client",
        back_populates="user",
        passive_deletes=True,
        order_by="Client.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'admin')",
            name='ck_user_role'
        ),
        CheckConstraint(
            "status IN ('active', 'inactive', 'revoked')",
            name='ck_user_status'
        ),
    )

    @validates('email')
    def validate_email(self, key, value):
        """Basic email format validation"""
        if not re.match(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$', value):
            raise ValueError("Invalid email format")
        return value.lower()

    @property
    def is_system(self) -> bool:
        return self.id == SYSTEM_USER_ID

    def to_dict(self):
        """Convert user to the portable profile representation"""
        return {
            "id": str(self.id),
            "name": self.client_name,
            "email": self.email,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


class Client(Base):
    """API client credential owned by a user.

    status_before_closure is set when an account closure revokes the client,
    so a cancelled closure restores exactly the status the client had.
    """
    __tablename__ = "client"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="RESTRICT"), nullable=False, index=True)
    client_id = Column(Text, nullable=False, unique=True)
    client_secret = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=ClientStatus.PENDING)
    status_before_closure = Column(Text, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="clients")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'revoked')",
            name='ck_client_status'
        ),
    )

    def to_dict(self):
        return {
            "client_id": self.client_id,
            "description": self.description,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "usage_count": self.usage_count,
        }


def ensure_system_user(session: Session) -> User:
    """Insert the sentinel user if it is missing and return it.

    The sentinel can never log in and is excluded from every sweep; it only
    exists so anonymized admin logs keep a valid foreign key.
    """
    user = session.get(User, SYSTEM_USER_ID)
    if user is None:
        user = User(
            id=SYSTEM_USER_ID,
            email=SYSTEM_USER_EMAIL,
            client_name="System - Deleted Admin",
            role="admin",
            status=UserStatus.INACTIVE,
            deletion_reason="System user for deleted admin references",
        )
        session.add(user)
        session.flush()
    return user
