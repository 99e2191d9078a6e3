"""SQLAlchemy models for the retention lifecycle manager"""

from .base import Base, PortableJSONB, utcnow
from .user import (
    User,
    UserStatus,
    DeletionReason,
    Client,
    ClientStatus,
    SYSTEM_USER_ID,
    ensure_system_user,
)
from .token import Token, TokenType
from .bank_connection import BankConnection, ConnectionStatus
from .financial import BankUser, Account, Transaction
from .insight import InsightMetric, QueryHistory, NotificationPreference
from .admin_log import AdminLog
from .retention_log import RetentionLog, RetentionLogImmutableError

__all__ = [
    "Base",
    "PortableJSONB",
    "utcnow",
    "User",
    "UserStatus",
    "DeletionReason",
    "Client",
    "ClientStatus",
    "SYSTEM_USER_ID",
    "ensure_system_user",
    "Token",
    "TokenType",
    "BankConnection",
    "ConnectionStatus",
    "BankUser",
    "Account",
    "Transaction",
    "InsightMetric",
    "QueryHistory",
    "NotificationPreference",
    "AdminLog",
    "RetentionLog",
    "RetentionLogImmutableError",
]
