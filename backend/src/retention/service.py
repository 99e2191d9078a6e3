"""Retention service: the operations exposed to the rest of the platform.

RetentionService wraps each operation in its own transaction and run id:
- handle_account_closure: revoke credentials and schedule deletion
- cancel_account_deletion: reactivate before the deletion deadline
- handle_connection_disconnection: neutralize a bank connection secret
- get_retention_settings / update_retention_settings: per-user retention choices
- export_user_data: portable copy of a user's data
- verify_user_data_deletion: completeness check after deletion
- audit_retention_compliance: store-wide counts past retention horizons

build_retention_components() is the single place where the object graph is
wired; workers and tests call it and own the result.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union
from uuid import UUID

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database import build_engine, build_session_factory, init_db, session_scope
from models.base import Base
from observability.run_id import run_context
from vault import CredentialVault
from .auditor import ComplianceAuditor
from .engine import CascadingDeletionEngine
from .lifecycle import LifecycleStateMachine
from .notifications import LoggingNotificationSender, NotificationSender
from .policy import RetentionPolicy, RetentionSettingsUpdate
from .resolver import DependencyGraphResolver
from .scheduler import RetentionScheduler
from .schemas import (
    AccountClosureResult,
    CancellationResult,
    ComplianceAuditReport,
    DisconnectionResult,
    PendingDeletionPage,
    PolicyStatistics,
    RetentionSettingsView,
    UserDataExport,
    VerificationReport,
)

logger = logging.getLogger(__name__)


class RetentionService:
    """Facade over the lifecycle state machine and the compliance auditor.

    Errors from the retention exception hierarchy (UserNotFound,
    ExpiredGracePeriod, ...) propagate to the caller; the transaction of
    the failed operation is rolled back.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        state_machine: LifecycleStateMachine,
        auditor: ComplianceAuditor,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.auditor = auditor

    def handle_account_closure(
        self,
        user_id: UUID,
        actor_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> AccountClosureResult:
        with run_context(), session_scope(self.session_factory) as session:
            return self.state_machine.close_account(session, user_id, now=now, actor_id=actor_id)

    def cancel_account_deletion(
        self,
        user_id: UUID,
        actor_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        with run_context(), session_scope(self.session_factory) as session:
            return self.state_machine.cancel_deletion(session, user_id, now=now, actor_id=actor_id)

    def handle_connection_disconnection(
        self,
        user_id: UUID,
        connection_id: UUID,
        now: Optional[datetime] = None,
    ) -> DisconnectionResult:
        with run_context(), session_scope(self.session_factory) as session:
            return self.state_machine.disconnect_connection(session, user_id, connection_id, now=now)

    def get_retention_settings(self, user_id: UUID) -> RetentionSettingsView:
        with session_scope(self.session_factory) as session:
            return self.state_machine.get_retention_settings(session, user_id)

    def update_retention_settings(
        self,
        user_id: UUID,
        changes: Union[RetentionSettingsUpdate, Dict[str, Any]],
        actor_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> RetentionSettingsView:
        """Raises pydantic.ValidationError for unknown fields or out-of-range horizons."""
        changes = RetentionSettingsUpdate.model_validate(changes)
        with run_context(), session_scope(self.session_factory) as session:
            return self.state_machine.update_retention_settings(
                session, user_id, changes, now=now, actor_id=actor_id
            )

    def export_user_data(self, user_id: UUID, now: Optional[datetime] = None) -> UserDataExport:
        with run_context(), session_scope(self.session_factory) as session:
            return self.auditor.export_user(session, user_id, now=now)

    def verify_user_data_deletion(self, user_id: UUID, now: Optional[datetime] = None) -> VerificationReport:
        with run_context(), session_scope(self.session_factory) as session:
            return self.auditor.verify(session, user_id, now=now)

    def audit_retention_compliance(self, now: Optional[datetime] = None) -> ComplianceAuditReport:
        with run_context(), session_scope(self.session_factory) as session:
            return self.auditor.audit(session, now=now)

    def get_policy_statistics(self, now: Optional[datetime] = None) -> PolicyStatistics:
        with session_scope(self.session_factory) as session:
            return self.auditor.policy_stats(session, now=now)

    def list_pending_deletions(self, page: int = 1, limit: int = 20) -> PendingDeletionPage:
        with session_scope(self.session_factory) as session:
            return self.auditor.pending_deletions(session, page=page, limit=limit)


@dataclass
class RetentionComponents:
    """Everything one process needs; built once, shut down explicitly."""

    db_engine: Engine
    session_factory: sessionmaker
    policy: RetentionPolicy
    resolver: DependencyGraphResolver
    deletion_engine: CascadingDeletionEngine
    state_machine: LifecycleStateMachine
    auditor: ComplianceAuditor
    scheduler: RetentionScheduler
    service: RetentionService

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown()
        else:
            self.db_engine.dispose()


def build_retention_components(
    settings: Optional[Settings] = None,
    db_engine: Optional[Engine] = None,
    notifier: Optional[NotificationSender] = None,
    vault: Optional[CredentialVault] = None,
    create_schema: bool = False,
) -> RetentionComponents:
    """Wire the retention object graph.

    The manifest is checked against the mapped schema here, so a foreign key
    missing from the manifest stops the process at startup.
    """
    settings = settings or get_settings()
    db_engine = db_engine or build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(db_engine)
    if create_schema:
        init_db(db_engine, session_factory)

    policy = RetentionPolicy.from_settings(settings)
    resolver = DependencyGraphResolver(policy)
    resolver.verify_against_metadata(Base.metadata)

    if vault is None and settings.ENCRYPTION_MASTER_KEY:
        vault = CredentialVault(settings.ENCRYPTION_MASTER_KEY)
    if vault is None:
        logger.warning("ENCRYPTION_MASTER_KEY not set, bank connection disconnection is unavailable")

    deletion_engine = CascadingDeletionEngine(
        resolver,
        timeout_seconds=settings.DELETION_TIMEOUT_SECONDS,
    )
    state_machine = LifecycleStateMachine(
        policy,
        deletion_engine,
        notifier or LoggingNotificationSender(),
        vault=vault,
    )
    auditor = ComplianceAuditor(policy, resolver)
    scheduler = RetentionScheduler(
        session_factory,
        policy,
        resolver,
        state_machine,
        auditor,
        max_workers=settings.SWEEP_MAX_WORKERS,
        db_engine=db_engine,
    )
    service = RetentionService(session_factory, state_machine, auditor)

    return RetentionComponents(
        db_engine=db_engine,
        session_factory=session_factory,
        policy=policy,
        resolver=resolver,
        deletion_engine=deletion_engine,
        state_machine=state_machine,
        auditor=auditor,
        scheduler=scheduler,
        service=service,
    )
