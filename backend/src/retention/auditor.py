"""Compliance auditor: deletion verification, audits, exports and statistics.

Everything here is read-only except export_user(), which appends a
data_exported ledger entry.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from models import (
    Account,
    BankConnection,
    Client,
    ConnectionStatus,
    InsightMetric,
    QueryHistory,
    RetentionLog,
    SYSTEM_USER_ID,
    Token,
    TokenType,
    Transaction,
    User,
    UserStatus,
    utcnow,
)
from .exceptions import UserNotFound
from .ledger import RetentionAction, latest_retention_event, record_retention_event
from .manifest import ROOT_KIND
from .policy import Disposition, RetentionPolicy
from .resolver import DependencyGraphResolver, Selector
from .schemas import (
    ComplianceAuditReport,
    PendingDeletion,
    PendingDeletionPage,
    PolicyStatistics,
    UserDataExport,
    VerificationReport,
)
from .store import RetentionStore

logger = logging.getLogger(__name__)

# Number of most recent insight rows included in an export
EXPORT_INSIGHT_LIMIT = 100


class ComplianceAuditor:
    def __init__(self, policy: RetentionPolicy, resolver: DependencyGraphResolver):
        self.policy = policy
        self.resolver = resolver

    def _count(self, session: Session, model, *criteria) -> int:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return session.execute(stmt).scalar_one()

    def verify(self, session: Session, user_id: UUID, now: Optional[datetime] = None) -> VerificationReport:
        """Re-query every manifest table for rows that still belong to a user.

        For a deleted user the parent keys recorded in its account_deleted
        ledger entry are used, so rows reachable only through former clients
        or accounts are found too. Anonymized rows are reported separately
        under related_data.
        """
        store = RetentionStore(session)
        steps = self.resolver.resolve(store, user_id)
        if steps:
            selectors = {step.kind.name: step.selector for step in steps}
        else:
            entry = latest_retention_event(session, RetentionAction.ACCOUNT_DELETED, user_id)
            recorded = (entry.details or {}).get("selectors") if entry else None
            selectors = self.resolver.selectors_from_record(recorded)
            selectors[ROOT_KIND] = Selector("id", (user_id,))
            for kind in self.resolver.kinds.values():
                if kind.owner is not None and kind.owner.parent == ROOT_KIND:
                    selectors.setdefault(kind.name, Selector(kind.owner.column, (user_id,)))

        remaining: Dict[str, int] = {}
        related: Dict[str, int] = {}
        for name in self.resolver.order:
            kind = self.resolver.kinds[name]
            if self.policy.disposition_for(name) == Disposition.ANONYMIZE:
                # Rows still pointing at the user were not anonymized
                count = store.count(kind, Selector(kind.actor_column, (user_id,)))
                preserved = store.count(kind, Selector(kind.original_actor_column, (user_id,)))
                if preserved:
                    related[name] = preserved
            elif name in selectors:
                count = store.count(kind, selectors[name])
            else:
                continue
            if count:
                remaining[name] = count

        report = VerificationReport(
            user_id=user_id,
            is_completely_deleted=not remaining,
            remaining_data=remaining,
            related_data=related,
            checked_at=now or utcnow(),
        )
        if remaining:
            logger.warning(
                f"User {user_id} still has data in: {', '.join(sorted(remaining))}",
                extra={"user_id": str(user_id)},
            )
        return report

    def audit(self, session: Session, now: Optional[datetime] = None) -> ComplianceAuditReport:
        """Count records currently past their retention horizon."""
        now = now or utcnow()
        cutoffs = self.policy.calculate_cutoff_dates(now)
        transaction_cutoff = now - self.policy.horizon_for("transaction")
        insight_cutoff = now - self.policy.horizon_for("insight_metric")
        query_cutoff = now - self.policy.horizon_for("query_history")

        expired_tokens = self._count(
            session,
            Token,
            or_(
                and_(Token.token_type == TokenType.ACCESS, Token.expires_at < cutoffs["access_tokens"]),
                and_(Token.token_type == TokenType.REFRESH, Token.expires_at < cutoffs["refresh_tokens"]),
                and_(Token.is_revoked.is_(True), Token.revoked_at < cutoffs["revoked_tokens"]),
            ),
        )
        stale_transactions = self._count(session, Transaction, Transaction.date < transaction_cutoff)
        stale_insights = (
            self._count(session, InsightMetric, InsightMetric.created_at < insight_cutoff)
            + self._count(session, QueryHistory, QueryHistory.created_at < query_cutoff)
        )
        inactive_accounts = self._count(
            session,
            User,
            User.id != SYSTEM_USER_ID,
            User.status == UserStatus.ACTIVE,
            User.marked_for_deletion_at.is_(None),
            func.coalesce(User.last_login_at, User.created_at) < cutoffs["inactivity_warning"],
        )
        disconnected_connections = self._count(
            session,
            BankConnection,
            BankConnection.status == ConnectionStatus.DISCONNECTED,
            BankConnection.disconnected_at < cutoffs["disconnected_connections"],
        )
        accounts_due = self._count(
            session,
            User,
            User.id != SYSTEM_USER_ID,
            User.status.in_((UserStatus.INACTIVE, UserStatus.REVOKED)),
            User.marked_for_deletion_at.isnot(None),
            User.marked_for_deletion_at <= cutoffs["deletion"],
        )

        report = ComplianceAuditReport(
            expired_tokens=expired_tokens,
            stale_transactions=stale_transactions,
            stale_insights=stale_insights,
            inactive_accounts=inactive_accounts,
            disconnected_connections=disconnected_connections,
            accounts_due_for_deletion=accounts_due,
            total_pending_deletions=(
                expired_tokens + stale_transactions + stale_insights
                + disconnected_connections + accounts_due
            ),
            audited_at=now,
        )
        logger.info(
            f"Retention audit: {report.total_pending_deletions} records pending deletion",
            extra={"action": RetentionAction.MONTHLY_AUDIT},
        )
        return report

    def export_user(self, session: Session, user_id: UUID, now: Optional[datetime] = None) -> UserDataExport:
        """Collect a portable copy of a user's data and log the export."""
        now = now or utcnow()
        user = session.get(User, user_id)
        if user is None or user.is_system:
            raise UserNotFound(user_id)

        clients = session.execute(
            select(Client).where(Client.user_id == user.id).order_by(Client.created_at)
        ).scalars().all()
        client_ids = [c.client_id for c in clients]

        accounts = []
        transactions = []
        if client_ids:
            accounts = session.execute(
                select(Account).where(Account.client_id.in_(client_ids)).order_by(Account.created_at)
            ).scalars().all()
        if accounts:
            transactions = session.execute(
                select(Transaction)
                .where(Transaction.account_id.in_([a.id for a in accounts]))
                .order_by(Transaction.date.desc())
            ).scalars().all()

        insights = session.execute(
            select(InsightMetric)
            .where(InsightMetric.user_id == user.id)
            .order_by(InsightMetric.created_at.desc())
            .limit(EXPORT_INSIGHT_LIMIT)
        ).scalars().all()

        export = UserDataExport(
            user_profile=user.to_dict(),
            clients=[c.to_dict() for c in clients],
            financial_data={
                "accounts": [a.to_dict() for a in accounts],
                "transactions": [t.to_dict() for t in transactions],
            },
            insights=[i.to_dict() for i in insights],
            export_date=now,
        )

        record_retention_event(
            session,
            RetentionAction.DATA_EXPORTED,
            user_id=user.id,
            details={
                "clients": len(clients),
                "accounts": len(accounts),
                "transactions": len(transactions),
                "insights": len(insights),
            },
            timestamp=now,
        )
        return export

    def policy_stats(self, session: Session, now: Optional[datetime] = None) -> PolicyStatistics:
        now = now or utcnow()
        real_user = User.id != SYSTEM_USER_ID

        users = {
            "total": self._count(session, User, real_user),
            "active": self._count(session, User, real_user, User.status == UserStatus.ACTIVE),
            "inactive": self._count(session, User, real_user, User.status == UserStatus.INACTIVE),
            "revoked": self._count(session, User, real_user, User.status == UserStatus.REVOKED),
            "warned": self._count(
                session, User, real_user,
                User.inactivity_warning_date.isnot(None),
                User.marked_for_deletion_at.is_(None),
            ),
            "marked_for_deletion": self._count(
                session, User, real_user, User.marked_for_deletion_at.isnot(None)
            ),
        }
        connections = {
            "total": self._count(session, BankConnection),
            "active": self._count(session, BankConnection, BankConnection.status == ConnectionStatus.ACTIVE),
            "disconnected": self._count(
                session, BankConnection, BankConnection.status == ConnectionStatus.DISCONNECTED
            ),
        }
        tokens = {
            "total": self._count(session, Token),
            "active": self._count(session, Token, Token.is_revoked.is_(False), Token.expires_at > now),
            "expired": self._count(session, Token, Token.is_revoked.is_(False), Token.expires_at <= now),
            "revoked": self._count(session, Token, Token.is_revoked.is_(True)),
        }

        rows = session.execute(
            select(RetentionLog.action, func.count())
            .where(RetentionLog.timestamp >= now - timedelta(days=30))
            .group_by(RetentionLog.action)
        ).all()

        return PolicyStatistics(
            users=users,
            connections=connections,
            tokens=tokens,
            retention_log_entries=self._count(session, RetentionLog),
            recent_actions={action: count for action, count in rows},
            generated_at=now,
        )

    def pending_deletions(self, session: Session, page: int = 1, limit: int = 20) -> PendingDeletionPage:
        """Users marked for deletion, soonest deletion first."""
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= limit <= 100:
            raise ValueError("limit must be between 1 and 100")

        criteria = (User.id != SYSTEM_USER_ID, User.marked_for_deletion_at.isnot(None))
        total = self._count(session, User, *criteria)
        users = session.execute(
            select(User)
            .where(*criteria)
            .order_by(User.marked_for_deletion_at.asc(), User.id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        items = [
            PendingDeletion(
                user_id=u.id,
                email=u.email,
                status=u.status,
                deletion_reason=u.deletion_reason,
                marked_for_deletion_at=u.marked_for_deletion_at,
                scheduled_deletion_date=self.policy.scheduled_deletion_date(u.marked_for_deletion_at),
            )
            for u in users
        ]
        return PendingDeletionPage(items=items, page=page, limit=limit, total=total)
