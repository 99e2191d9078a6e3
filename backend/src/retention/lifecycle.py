"""User lifecycle state machine.

    Active --(365d without login, warning sent)--> Warned
    Warned --(455d without login)--> GracePeriod
    GracePeriod / Revoked --(30d after marking)--> Deleted
    Active --(account closure)--> Revoked
    GracePeriod / Revoked --(cancellation before deadline)--> Active

Every transition locks the user row, re-checks its precondition against the
locked row and writes the ledger entry in the same transaction. Deletion is
only ever reached through delete_if_due().
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from audit.service import AdminAction, log_admin_action
from models import (
    BankConnection,
    Client,
    ClientStatus,
    ConnectionStatus,
    DeletionReason,
    SYSTEM_USER_ID,
    Token,
    User,
    UserStatus,
    utcnow,
)
from vault import CredentialVault
from .engine import CascadingDeletionEngine
from .exceptions import (
    ConnectionNotFound,
    ExpiredGracePeriod,
    NotMarkedForDeletion,
    RetentionError,
    UserNotFound,
)
from .ledger import RetentionAction, record_retention_event
from .notifications import NotificationSender
from .policy import RetentionPolicy, RetentionSettingsUpdate, UserRetentionSettings
from .schemas import (
    AccountClosureResult,
    CancellationResult,
    DeletionResult,
    DisconnectionResult,
    RetentionSettingsView,
)
from .store import RetentionStore

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    ACTIVE = "active"
    WARNED = "warned"
    GRACE_PERIOD = "grace_period"
    REVOKED = "revoked"
    DELETED = "deleted"


def _warning_is_current(user: User) -> bool:
    """A warning only counts if it was sent after the latest login."""
    if user.inactivity_warning_date is None:
        return False
    return user.last_login_at is None or user.inactivity_warning_date >= user.last_login_at


def _last_activity(user: User) -> datetime:
    return user.last_login_at or user.created_at


def lifecycle_state(user: Optional[User]) -> LifecycleState:
    """Derive the lifecycle state from a user row (None means deleted)."""
    if user is None:
        return LifecycleState.DELETED
    if user.marked_for_deletion_at is not None:
        if user.deletion_reason == DeletionReason.USER_REQUEST or user.status == UserStatus.REVOKED:
            return LifecycleState.REVOKED
        return LifecycleState.GRACE_PERIOD
    if _warning_is_current(user):
        return LifecycleState.WARNED
    return LifecycleState.ACTIVE


# SQL mirror of _last_activity(); users that never logged in age from creation
_LAST_ACTIVITY = func.coalesce(User.last_login_at, User.created_at)


class LifecycleStateMachine:
    """Applies lifecycle transitions to single users.

    Methods take the caller's session and never commit, except
    delete_if_due() whose deletion engine owns the transaction.
    """

    def __init__(
        self,
        policy: RetentionPolicy,
        deletion_engine: CascadingDeletionEngine,
        notifier: NotificationSender,
        vault: Optional[CredentialVault] = None,
    ):
        self.policy = policy
        self.deletion_engine = deletion_engine
        self.notifier = notifier
        self.vault = vault

    # Candidate selection (re-derived from current state on every sweep)

    def warning_candidate_ids(self, session: Session, now: datetime) -> List[UUID]:
        threshold = self.policy.calculate_cutoff_dates(now)["inactivity_warning"]
        stmt = (
            select(User.id)
            .where(
                User.id != SYSTEM_USER_ID,
                User.status == UserStatus.ACTIVE,
                User.marked_for_deletion_at.is_(None),
                _LAST_ACTIVITY < threshold,
                or_(
                    User.inactivity_warning_date.is_(None),
                    and_(
                        User.last_login_at.isnot(None),
                        User.inactivity_warning_date < User.last_login_at,
                    ),
                ),
            )
            .order_by(User.created_at, User.id)
        )
        return list(session.execute(stmt).scalars().all())

    def marking_candidate_ids(self, session: Session, now: datetime) -> List[UUID]:
        threshold = self.policy.calculate_cutoff_dates(now)["grace_period"]
        stmt = (
            select(User.id)
            .where(
                User.id != SYSTEM_USER_ID,
                User.status == UserStatus.ACTIVE,
                User.marked_for_deletion_at.is_(None),
                User.inactivity_warning_date.isnot(None),
                _LAST_ACTIVITY < threshold,
                or_(
                    User.last_login_at.is_(None),
                    User.inactivity_warning_date >= User.last_login_at,
                ),
            )
            .order_by(User.created_at, User.id)
        )
        return list(session.execute(stmt).scalars().all())

    def deletion_candidate_ids(self, session: Session, cutoff: datetime) -> List[UUID]:
        """Users whose deletion period ended at or before `cutoff`."""
        stmt = (
            select(User.id)
            .where(
                User.id != SYSTEM_USER_ID,
                User.status.in_([UserStatus.INACTIVE, UserStatus.REVOKED]),
                User.marked_for_deletion_at.isnot(None),
                User.marked_for_deletion_at <= cutoff,
            )
            .order_by(User.marked_for_deletion_at, User.id)
        )
        return list(session.execute(stmt).scalars().all())

    # Predicates evaluated against the locked row

    def _is_warnable(self, user: User, now: datetime) -> bool:
        threshold = self.policy.calculate_cutoff_dates(now)["inactivity_warning"]
        return (
            not user.is_system
            and user.status == UserStatus.ACTIVE
            and user.marked_for_deletion_at is None
            and _last_activity(user) < threshold
            and not _warning_is_current(user)
        )

    def _is_markable(self, user: User, now: datetime) -> bool:
        threshold = self.policy.calculate_cutoff_dates(now)["grace_period"]
        return (
            not user.is_system
            and user.status == UserStatus.ACTIVE
            and user.marked_for_deletion_at is None
            and _warning_is_current(user)
            and _last_activity(user) < threshold
        )

    def _is_due(self, user: User, cutoff: datetime) -> bool:
        return (
            not user.is_system
            and user.status in (UserStatus.INACTIVE, UserStatus.REVOKED)
            and user.marked_for_deletion_at is not None
            and user.marked_for_deletion_at <= cutoff
        )

    def scheduled_deletion_date(self, user: User) -> datetime:
        return self.policy.scheduled_deletion_date(user.marked_for_deletion_at)

    # Transitions

    def warn(self, session: Session, user_id: UUID, now: Optional[datetime] = None) -> bool:
        """Active -> Warned. Returns True when the warning was recorded.

        The warning date is set whether or not delivery succeeded: an
        undeliverable address must not keep an account out of the deletion
        lifecycle. Delivery failures are logged and noted in the ledger.
        """
        now = now or utcnow()
        user = RetentionStore(session).lock_user(user_id)
        if user is None or not self._is_warnable(user, now):
            return False

        try:
            delivered = self.notifier.send_inactivity_warning(user)
        except Exception as e:
            logger.error(
                f"Inactivity warning to user {user_id} failed: {e}",
                extra={"user_id": str(user_id)},
                exc_info=True,
            )
            delivered = False

        if not delivered:
            logger.warning(
                f"Inactivity warning not delivered to user {user_id}, recording it anyway",
                extra={"user_id": str(user_id), "action": RetentionAction.INACTIVITY_WARNING_SENT},
            )

        user.inactivity_warning_date = now
        record_retention_event(
            session,
            RetentionAction.INACTIVITY_WARNING_SENT,
            user_id=user.id,
            details={
                "last_login_at": user.last_login_at,
                "email": user.email,
                "delivered": bool(delivered),
            },
            timestamp=now,
        )
        return True

    def mark_for_deletion(self, session: Session, user_id: UUID, now: Optional[datetime] = None) -> bool:
        """Warned -> GracePeriod. Returns True when the user was marked."""
        now = now or utcnow()
        user = RetentionStore(session).lock_user(user_id)
        if user is None or not self._is_markable(user, now):
            return False

        user.status = UserStatus.INACTIVE
        user.marked_for_deletion_at = now
        user.deletion_reason = DeletionReason.INACTIVITY
        record_retention_event(
            session,
            RetentionAction.ACCOUNT_MARKED_FOR_DELETION,
            user_id=user.id,
            details={
                "reason": DeletionReason.INACTIVITY,
                "last_login_at": user.last_login_at,
                "inactivity_warning_date": user.inactivity_warning_date,
                "scheduled_deletion_date": self.scheduled_deletion_date(user),
            },
            timestamp=now,
        )
        logger.info(
            f"User {user_id} marked for deletion due to inactivity",
            extra={"user_id": str(user_id), "action": RetentionAction.ACCOUNT_MARKED_FOR_DELETION},
        )
        return True

    def delete_if_due(
        self,
        session: Session,
        user_id: UUID,
        cutoff: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[DeletionResult]:
        """GracePeriod / Revoked -> Deleted.

        Re-checks the marking under a row lock right before deleting, so a
        user whose deletion was cancelled after candidate selection is left
        alone. Returns None when the user was skipped.
        """
        now = now or utcnow()
        store = RetentionStore(session)
        user = store.lock_user(user_id)
        if user is None or not self._is_due(user, cutoff):
            session.rollback()
            logger.info(
                f"User {user_id} is no longer due for deletion, skipping",
                extra={"user_id": str(user_id)},
            )
            return None

        reason = user.deletion_reason or "retention_policy"
        return self.deletion_engine.delete_user(store, user_id, reason=reason, now=now)

    def close_account(
        self,
        session: Session,
        user_id: UUID,
        now: Optional[datetime] = None,
        actor_id: Optional[UUID] = None,
    ) -> AccountClosureResult:
        """Active -> Revoked.

        Revokes every token and client at once and schedules the deletion.
        Closing an account that is already closed returns the existing
        schedule without changing anything.
        """
        now = now or utcnow()
        user = RetentionStore(session).lock_user(user_id)
        if user is None or user.is_system:
            raise UserNotFound(user_id)

        if user.marked_for_deletion_at is not None and user.deletion_reason == DeletionReason.USER_REQUEST:
            return AccountClosureResult(
                success=True,
                user_id=user.id,
                scheduled_deletion_date=self.scheduled_deletion_date(user),
            )

        tokens_revoked = session.execute(
            update(Token)
            .where(Token.user_id == user.id, Token.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=now)
        ).rowcount or 0

        clients = session.execute(
            select(Client).where(Client.user_id == user.id, Client.status != ClientStatus.REVOKED)
        ).scalars().all()
        for client in clients:
            client.status_before_closure = client.status
            client.status = ClientStatus.REVOKED

        # An inactivity-marked user keeps the original schedule
        if user.marked_for_deletion_at is None:
            user.marked_for_deletion_at = now
        user.status = UserStatus.INACTIVE
        user.deletion_reason = DeletionReason.USER_REQUEST
        scheduled = self.scheduled_deletion_date(user)

        record_retention_event(
            session,
            RetentionAction.ACCOUNT_CLOSURE_REQUESTED,
            user_id=user.id,
            details={
                "scheduled_deletion_date": scheduled,
                "tokens_revoked": tokens_revoked,
                "clients_revoked": [c.client_id for c in clients],
                "actor_id": actor_id or user.id,
            },
            timestamp=now,
        )
        if actor_id is not None and actor_id != user.id:
            log_admin_action(
                session,
                admin_id=actor_id,
                action=AdminAction.ACCOUNT_CLOSURE_ON_BEHALF,
                details={"user_id": str(user.id), "scheduled_deletion_date": scheduled.isoformat()},
            )

        logger.info(
            f"Account closure requested for user {user_id}, deletion scheduled for {scheduled.isoformat()}",
            extra={"user_id": str(user_id), "action": RetentionAction.ACCOUNT_CLOSURE_REQUESTED},
        )
        return AccountClosureResult(success=True, user_id=user.id, scheduled_deletion_date=scheduled)

    def cancel_deletion(
        self,
        session: Session,
        user_id: UUID,
        now: Optional[datetime] = None,
        actor_id: Optional[UUID] = None,
    ) -> CancellationResult:
        """GracePeriod / Revoked -> Active.

        Legal only strictly before marked_for_deletion_at + deletion period.
        The deadline is checked against the locked row, so a concurrent
        deletion sweep sees either the cancelled or the marked state.
        Clients revoked by the closure get their previous status back;
        tokens stay revoked.
        """
        now = now or utcnow()
        user = RetentionStore(session).lock_user(user_id)
        if user is None or user.is_system:
            raise UserNotFound(user_id)
        if user.marked_for_deletion_at is None:
            raise NotMarkedForDeletion(user_id)

        deadline = self.scheduled_deletion_date(user)
        if now >= deadline:
            raise ExpiredGracePeriod(user_id, deadline)

        previous_reason = user.deletion_reason
        user.status = UserStatus.ACTIVE
        user.marked_for_deletion_at = None
        user.inactivity_warning_date = None
        user.deletion_reason = None
        # Reactivation counts as activity so the user is not re-warned at once
        if user.last_login_at is None or user.last_login_at < now:
            user.last_login_at = now

        clients = session.execute(
            select(Client).where(
                Client.user_id == user.id,
                Client.status == ClientStatus.REVOKED,
                Client.status_before_closure.isnot(None),
            )
        ).scalars().all()
        for client in clients:
            client.status = client.status_before_closure
            client.status_before_closure = None

        record_retention_event(
            session,
            RetentionAction.ACCOUNT_DELETION_CANCELLED,
            user_id=user.id,
            details={
                "previous_reason": previous_reason,
                "clients_restored": [c.client_id for c in clients],
                "actor_id": actor_id or user.id,
            },
            timestamp=now,
        )
        if actor_id is not None and actor_id != user.id:
            log_admin_action(
                session,
                admin_id=actor_id,
                action=AdminAction.ACCOUNT_DELETION_CANCELLED_ON_BEHALF,
                details={"user_id": str(user.id)},
            )

        logger.info(
            f"Account deletion cancelled for user {user_id}",
            extra={"user_id": str(user_id), "action": RetentionAction.ACCOUNT_DELETION_CANCELLED},
        )
        return CancellationResult(success=True, user_id=user.id)

    def disconnect_connection(
        self,
        session: Session,
        user_id: UUID,
        connection_id: UUID,
        now: Optional[datetime] = None,
    ) -> DisconnectionResult:
        """Mark a bank connection disconnected and destroy its secret.

        The aggregator token is overwritten with an encrypted invalidation
        marker. Disconnecting twice returns the original schedule.
        """
        if self.vault is None:
            raise RetentionError("A CredentialVault is required to disconnect bank connections")

        now = now or utcnow()
        connection = session.execute(
            select(BankConnection)
            .where(BankConnection.id == connection_id, BankConnection.user_id == user_id)
            .with_for_update()
        ).scalar_one_or_none()
        if connection is None:
            raise ConnectionNotFound(user_id, connection_id)

        if connection.status == ConnectionStatus.DISCONNECTED and connection.deletion_scheduled_at:
            return DisconnectionResult(
                success=True,
                user_id=user_id,
                connection_id=connection.id,
                scheduled_deletion_date=connection.deletion_scheduled_at,
            )

        scheduled = now + timedelta(days=self.policy.connection_disconnect_days)
        connection.status = ConnectionStatus.DISCONNECTED
        connection.disconnected_at = now
        connection.deletion_scheduled_at = scheduled
        connection.access_token = self.vault.invalidation_marker()

        record_retention_event(
            session,
            RetentionAction.CONNECTION_DISCONNECTED,
            user_id=user_id,
            details={
                "connection_id": connection.id,
                "item_id": connection.item_id,
                "institution_id": connection.institution_id,
                "institution_name": connection.institution_name,
                "scheduled_deletion_date": scheduled,
            },
            timestamp=now,
        )
        logger.info(
            f"Bank connection {connection_id} disconnected, deletion scheduled for {scheduled.isoformat()}",
            extra={"user_id": str(user_id), "connection_id": str(connection_id)},
        )
        return DisconnectionResult(
            success=True,
            user_id=user_id,
            connection_id=connection.id,
            scheduled_deletion_date=scheduled,
        )

    # Retention settings

    def _settings_view(self, user: User) -> RetentionSettingsView:
        marked_at = user.marked_for_deletion_at
        return RetentionSettingsView(
            user_id=user.id,
            settings=UserRetentionSettings.from_stored(user.data_retention_preferences),
            status=user.status,
            is_marked_for_deletion=marked_at is not None,
            marked_for_deletion_at=marked_at,
            scheduled_deletion_date=self.scheduled_deletion_date(user) if marked_at else None,
        )

    def get_retention_settings(self, session: Session, user_id: UUID) -> RetentionSettingsView:
        user = session.get(User, user_id)
        if user is None or user.is_system:
            raise UserNotFound(user_id)
        return self._settings_view(user)

    def update_retention_settings(
        self,
        session: Session,
        user_id: UUID,
        changes: RetentionSettingsUpdate,
        now: Optional[datetime] = None,
        actor_id: Optional[UUID] = None,
    ) -> RetentionSettingsView:
        """Merge `changes` into the stored settings and record the result.

        An update by someone other than the user is recorded as an admin
        action as well.
        """
        now = now or utcnow()
        user = RetentionStore(session).lock_user(user_id)
        if user is None or user.is_system:
            raise UserNotFound(user_id)

        updated = UserRetentionSettings.from_stored(user.data_retention_preferences).apply(changes)
        user.data_retention_preferences = updated.model_dump()

        on_behalf = actor_id is not None and actor_id != user.id
        action = (
            RetentionAction.ADMIN_UPDATED_RETENTION_SETTINGS
            if on_behalf
            else RetentionAction.RETENTION_SETTINGS_UPDATED
        )
        record_retention_event(
            session,
            action,
            user_id=user.id,
            details={
                "settings": updated.model_dump(),
                "changed": sorted(changes.model_dump(exclude_none=True)),
                "actor_id": actor_id or user.id,
            },
            timestamp=now,
        )
        if on_behalf:
            log_admin_action(
                session,
                admin_id=actor_id,
                action=AdminAction.RETENTION_SETTINGS_UPDATED_ON_BEHALF,
                details={"user_id": str(user.id), "settings": updated.model_dump()},
            )
        logger.info(
            f"Updated retention settings for user {user_id}",
            extra={"user_id": str(user_id), "action": action},
        )
        return self._settings_view(user)
