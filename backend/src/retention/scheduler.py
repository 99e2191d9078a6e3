"""Periodic retention sweeps.

Daily:
    1. expire tokens (access, refresh, revoked)
    2. delete disconnected bank connections past their horizon
    3. age out derived records with their own horizon
    4. delete users whose deletion period has passed (GracePeriod -> Deleted)
    5. mark warned users for deletion (Warned -> GracePeriod)
Weekly:
    send inactivity warnings (Active -> Warned)
Monthly:
    compliance audit, persisted as a monthly_audit ledger entry

Candidates are always re-derived from the current database state, so
re-running a sweep against already-processed data is a no-op. Each user is
handled in its own session; one user's failure is logged, counted in the
sweep statistics and never stops the sweep.
"""

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from database import session_scope
from models import BankConnection, ConnectionStatus, Token, TokenType, utcnow
from observability import metrics
from observability.run_id import run_context
from .auditor import ComplianceAuditor
from .exceptions import DeletionFailed, ManifestError
from .ledger import RetentionAction, record_retention_event
from .lifecycle import LifecycleStateMachine
from .policy import RetentionPolicy
from .resolver import DependencyGraphResolver
from .schemas import DeletionResult, SweepStatistics
from .store import RetentionStore

logger = logging.getLogger(__name__)


class RetentionScheduler:
    """Runs the daily, weekly and monthly sweeps.

    start() must be called before any sweep and shutdown() releases the
    database engine. Production drives the sweeps from Celery beat.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: RetentionPolicy,
        resolver: DependencyGraphResolver,
        state_machine: LifecycleStateMachine,
        auditor: ComplianceAuditor,
        max_workers: int = 1,
        db_engine: Optional[Engine] = None,
    ):
        self.session_factory = session_factory
        self.policy = policy
        self.resolver = resolver
        self.state_machine = state_machine
        self.auditor = auditor
        self.max_workers = max(1, max_workers)
        self.db_engine = db_engine
        self._running = False

        # Age-based expiry deletes rows directly; it must not orphan children
        for kind_name in policy.age_horizons():
            kind = resolver.kind(kind_name)
            if kind.age_column is None:
                raise ManifestError(f"Kind '{kind_name}' has a horizon but no age column")
            if resolver.dependents(kind_name):
                raise ManifestError(f"Kind '{kind_name}' has dependents and cannot be aged out directly")

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True
        logger.info(
            f"Retention scheduler started (max_workers={self.max_workers})",
            extra={"sweep": "scheduler"},
        )

    def shutdown(self) -> None:
        if not self._running:
            return
        self._running = False
        if self.db_engine is not None:
            self.db_engine.dispose()
        logger.info("Retention scheduler stopped", extra={"sweep": "scheduler"})

    def _sweep(self, name: str, now: Optional[datetime], body: Callable) -> SweepStatistics:
        if not self._running:
            raise RuntimeError("RetentionScheduler.start() must be called before running sweeps")

        now = now or utcnow()
        with run_context() as run_id:
            started = time.monotonic()
            stats = SweepStatistics(sweep=name, run_id=run_id, started_at=now)
            logger.info(f"Starting {name} retention sweep", extra={"sweep": name})

            try:
                body(now, stats)
            except Exception as e:
                stats.errors += 1
                logger.error(f"{name} retention sweep aborted: {e}", extra={"sweep": name}, exc_info=True)

            stats.duration_seconds = time.monotonic() - started
            stats.completed_at = utcnow()

            metrics.sweeps_total.labels(sweep=name, status="error" if stats.has_errors else "success").inc()
            metrics.sweep_duration_seconds.labels(sweep=name).observe(stats.duration_seconds)
            for category, count in stats.deleted.items():
                if count:
                    metrics.records_deleted_total.labels(category=category).inc(count)

            log = logger.warning if stats.has_errors or stats.is_anomaly else logger.info
            log(
                f"{name} retention sweep completed: {stats.total_records_deleted} records deleted, "
                f"{stats.accounts_deleted} accounts deleted, {stats.errors} errors "
                f"in {stats.duration_seconds:.2f}s",
                extra={"sweep": name},
            )
            if stats.is_anomaly:
                logger.warning(
                    f"Anomaly detected: {stats.total_records_deleted} records deleted in one sweep",
                    extra={"sweep": name},
                )
        return stats

    # Daily

    def run_daily(self, now: Optional[datetime] = None) -> SweepStatistics:
        return self._sweep("daily", now, self._daily)

    def _daily(self, now: datetime, stats: SweepStatistics) -> None:
        steps = (
            ("tokens", lambda: stats.deleted.update(self.expire_tokens(now))),
            ("connections", lambda: stats.deleted.update(connections=self.expire_connections(now))),
            ("stale_records", lambda: stats.deleted.update(self.expire_stale_records(now))),
            ("deletions", lambda: self.sweep_deletions(now, stats)),
            ("marking", lambda: self.sweep_marking(now, stats)),
        )
        for step_name, step in steps:
            try:
                step()
            except Exception as e:
                stats.errors += 1
                logger.error(
                    f"Daily sweep step {step_name} failed: {e}",
                    extra={"sweep": "daily"},
                    exc_info=True,
                )

    def expire_tokens(self, now: datetime) -> Dict[str, int]:
        """Delete tokens past their post-expiry or post-revocation horizon."""
        cutoffs = self.policy.calculate_cutoff_dates(now)
        kind = self.resolver.kind("token")
        columns = kind.table.c

        with session_scope(self.session_factory) as session:
            store = RetentionStore(session)
            counts = {
                "access_tokens": store.delete_older_than(
                    kind, "expires_at", cutoffs["access_tokens"],
                    columns.token_type == TokenType.ACCESS,
                ),
                "refresh_tokens": store.delete_older_than(
                    kind, "expires_at", cutoffs["refresh_tokens"],
                    columns.token_type == TokenType.REFRESH,
                ),
                "revoked_tokens": store.delete_older_than(
                    kind, "revoked_at", cutoffs["revoked_tokens"],
                    columns.is_revoked.is_(True),
                ),
            }
            if sum(counts.values()) > 0:
                record_retention_event(
                    session,
                    RetentionAction.EXPIRED_TOKENS_DELETED,
                    details={
                        **counts,
                        "access_cutoff": cutoffs["access_tokens"],
                        "refresh_cutoff": cutoffs["refresh_tokens"],
                        "revoked_cutoff": cutoffs["revoked_tokens"],
                    },
                    timestamp=now,
                )
        return counts

    def expire_connections(self, now: datetime) -> int:
        """Delete bank connections disconnected longer than the horizon."""
        cutoff = self.policy.calculate_cutoff_dates(now)["disconnected_connections"]
        with session_scope(self.session_factory) as session:
            connections = session.execute(
                select(BankConnection).where(
                    BankConnection.status == ConnectionStatus.DISCONNECTED,
                    BankConnection.disconnected_at < cutoff,
                )
            ).scalars().all()
            for connection in connections:
                record_retention_event(
                    session,
                    RetentionAction.CONNECTION_DELETED,
                    user_id=connection.user_id,
                    details={
                        "connection_id": connection.id,
                        "item_id": connection.item_id,
                        "institution_id": connection.institution_id,
                        "institution_name": connection.institution_name,
                        "disconnected_at": connection.disconnected_at,
                        "reason": "disconnected_retention_period_expired",
                    },
                    timestamp=now,
                )
                session.delete(connection)
            session.flush()
        return len(connections)

    def expire_stale_records(self, now: datetime) -> Dict[str, int]:
        """Age out derived kinds that carry their own horizon."""
        counts: Dict[str, int] = {}
        cutoffs = {}
        with session_scope(self.session_factory) as session:
            store = RetentionStore(session)
            for kind_name in self.policy.age_horizons():
                kind = self.resolver.kind(kind_name)
                cutoff = now - self.policy.horizon_for(kind_name)
                cutoffs[kind_name] = cutoff
                counts[kind_name] = store.delete_older_than(kind, kind.age_column, cutoff)
            if sum(counts.values()) > 0:
                record_retention_event(
                    session,
                    RetentionAction.STALE_RECORDS_DELETED,
                    details={"counts": counts, "cutoffs": cutoffs},
                    timestamp=now,
                )
        return counts

    def sweep_deletions(self, now: datetime, stats: SweepStatistics) -> None:
        """GracePeriod -> Deleted for every user due at sweep start."""
        cutoff = self.policy.calculate_cutoff_dates(now)["deletion"]
        with session_scope(self.session_factory) as session:
            candidates = self.state_machine.deletion_candidate_ids(session, cutoff)

        if not candidates:
            return
        logger.info(f"Found {len(candidates)} accounts due for deletion", extra={"sweep": "daily"})

        if self.max_workers == 1:
            outcomes = [self._delete_one(user_id, cutoff, now) for user_id in candidates]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                # Each worker gets a copy of the context so log lines keep the run id
                futures = [
                    executor.submit(contextvars.copy_context().run, self._delete_one, user_id, cutoff, now)
                    for user_id in candidates
                ]
                outcomes = [f.result() for f in futures]

        for user_id, result in outcomes:
            if result is None:
                stats.candidates_skipped += 1
                metrics.user_deletions_total.labels(status="skipped").inc()
            elif isinstance(result, DeletionResult):
                if result.skipped:
                    stats.candidates_skipped += 1
                    metrics.user_deletions_total.labels(status="skipped").inc()
                    continue
                stats.accounts_deleted += 1
                stats.deletion_warnings += len(result.warnings)
                for kind_name, count in result.per_kind_counts.items():
                    stats.deleted[kind_name] = stats.deleted.get(kind_name, 0) + count
                for warning in result.warnings:
                    metrics.deletion_warnings_total.labels(kind=warning.kind).inc()
                metrics.user_deletions_total.labels(status="deleted").inc()
            else:
                stats.errors += 1
                stats.failed_user_ids.append(user_id)
                metrics.user_deletions_total.labels(status="failed").inc()

    def _delete_one(self, user_id: UUID, cutoff: datetime, now: datetime) -> Tuple[UUID, object]:
        """Returns (user_id, DeletionResult | None | exception)."""
        session = self.session_factory()
        try:
            return user_id, self.state_machine.delete_if_due(session, user_id, cutoff, now=now)
        except DeletionFailed as e:
            logger.error(
                f"Failed to delete user {user_id}, will retry next run: {e}",
                extra={"user_id": str(user_id), "kind": e.kind},
            )
            return user_id, e
        except Exception as e:
            session.rollback()
            logger.error(
                f"Unexpected error deleting user {user_id}: {e}",
                extra={"user_id": str(user_id)},
                exc_info=True,
            )
            return user_id, e
        finally:
            session.close()

    def sweep_marking(self, now: datetime, stats: SweepStatistics) -> None:
        """Warned -> GracePeriod for users inactive past warning + grace."""
        with session_scope(self.session_factory) as session:
            candidates = self.state_machine.marking_candidate_ids(session, now)

        for user_id in candidates:
            try:
                with session_scope(self.session_factory) as session:
                    if self.state_machine.mark_for_deletion(session, user_id, now=now):
                        stats.accounts_marked += 1
                        metrics.lifecycle_transitions_total.labels(transition="marked").inc()
            except Exception as e:
                stats.errors += 1
                stats.failed_user_ids.append(user_id)
                logger.error(
                    f"Failed to mark user {user_id} for deletion: {e}",
                    extra={"user_id": str(user_id)},
                    exc_info=True,
                )

    # Weekly

    def run_weekly(self, now: Optional[datetime] = None) -> SweepStatistics:
        return self._sweep("weekly", now, self._weekly)

    def _weekly(self, now: datetime, stats: SweepStatistics) -> None:
        with session_scope(self.session_factory) as session:
            candidates: List[UUID] = self.state_machine.warning_candidate_ids(session, now)

        logger.info(f"Found {len(candidates)} inactive users to warn", extra={"sweep": "weekly"})
        for user_id in candidates:
            try:
                with session_scope(self.session_factory) as session:
                    if self.state_machine.warn(session, user_id, now=now):
                        stats.warnings_sent += 1
                        metrics.lifecycle_transitions_total.labels(transition="warned").inc()
                    else:
                        stats.candidates_skipped += 1
            except Exception as e:
                stats.errors += 1
                stats.failed_user_ids.append(user_id)
                logger.error(
                    f"Failed to warn user {user_id}: {e}",
                    extra={"user_id": str(user_id)},
                    exc_info=True,
                )

    # Monthly

    def run_monthly(self, now: Optional[datetime] = None) -> SweepStatistics:
        return self._sweep("monthly", now, self._monthly)

    def _monthly(self, now: datetime, stats: SweepStatistics) -> None:
        with session_scope(self.session_factory) as session:
            report = self.auditor.audit(session, now=now)
            record_retention_event(
                session,
                RetentionAction.MONTHLY_AUDIT,
                details=report.model_dump(mode="json"),
                timestamp=now,
            )
        stats.audit = report
        metrics.pending_deletions.set(report.total_pending_deletions)
