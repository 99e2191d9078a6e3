"""Declared entity-dependency manifest.

Each entry names a table, how its rows hang off their owner, and whether a
failure while removing it must abort the whole cascade. The resolver walks
this data; nothing else in the retention code knows column names.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Type

from models import (
    User,
    Client,
    Token,
    BankConnection,
    BankUser,
    Account,
    Transaction,
    QueryHistory,
    InsightMetric,
    NotificationPreference,
    AdminLog,
)


@dataclass(frozen=True)
class OwnerLink:
    """This kind's `column` holds values of the parent kind's `parent_column`."""
    column: str
    parent: str
    parent_column: str = "id"


@dataclass(frozen=True)
class EntityKind:
    name: str
    model: Type
    owner: Optional[OwnerLink] = None
    critical: bool = False
    # Other kinds this one holds foreign keys to (besides its owner)
    references: Tuple[str, ...] = ()
    # Column driving independent age-based expiry, if any
    age_column: Optional[str] = None
    # Anonymization columns (only for kinds preserved on deletion)
    actor_column: Optional[str] = None
    original_actor_column: Optional[str] = None
    details_column: Optional[str] = None

    @property
    def table(self):
        return self.model.__table__

    @property
    def is_root(self) -> bool:
        return self.owner is None


ROOT_KIND = "user"

ENTITY_MANIFEST: Tuple[EntityKind, ...] = (
    EntityKind("user", User, critical=True),
    EntityKind(
        "client", Client,
        owner=OwnerLink("user_id", "user"),
        critical=True,
    ),
    EntityKind(
        "token", Token,
        owner=OwnerLink("user_id", "user"),
        references=("client",),
        critical=True,
    ),
    EntityKind(
        "bank_connection", BankConnection,
        owner=OwnerLink("user_id", "user"),
        critical=True,
    ),
    EntityKind(
        "bank_user", BankUser,
        owner=OwnerLink("client_id", "client", "client_id"),
    ),
    EntityKind(
        "account", Account,
        owner=OwnerLink("client_id", "client", "client_id"),
    ),
    EntityKind(
        "transaction", Transaction,
        owner=OwnerLink("account_id", "account"),
        age_column="date",
    ),
    EntityKind(
        "query_history", QueryHistory,
        owner=OwnerLink("client_id", "client", "client_id"),
        age_column="created_at",
    ),
    EntityKind(
        "insight_metric", InsightMetric,
        owner=OwnerLink("user_id", "user"),
        age_column="created_at",
    ),
    EntityKind(
        "notification_preference", NotificationPreference,
        owner=OwnerLink("user_id", "user"),
    ),
    EntityKind(
        "admin_log", AdminLog,
        owner=OwnerLink("admin_id", "user"),
        actor_column="admin_id",
        original_actor_column="original_admin_id",
        details_column="details",
    ),
)
