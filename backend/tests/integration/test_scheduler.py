"""Integration tests for the daily, weekly and monthly sweeps."""

import pytest
from datetime import datetime, timedelta

from conftest import NOW
from models import (
    BankConnection,
    ConnectionStatus,
    InsightMetric,
    QueryHistory,
    RetentionLog,
    SYSTEM_USER_ID,
    Token,
    TokenType,
    Transaction,
    User,
)
from retention.ledger import RetentionAction
from retention.scheduler import RetentionScheduler
from retention.store import RetentionStore


def _ledger_count(session, action=None):
    session.expire_all()
    query = session.query(RetentionLog)
    if action:
        query = query.filter(RetentionLog.action == action)
    return query.count()


def _user(session, user_id):
    session.expire_all()
    return session.get(User, user_id)


class TestSchedulerLifecycle:
    def test_sweeps_require_start(self, session_factory, policy, resolver, state_machine, auditor):
        scheduler = RetentionScheduler(session_factory, policy, resolver, state_machine, auditor)

        with pytest.raises(RuntimeError):
            scheduler.run_daily(NOW)

    def test_start_and_shutdown(self, session_factory, policy, resolver, state_machine, auditor):
        scheduler = RetentionScheduler(session_factory, policy, resolver, state_machine, auditor)

        scheduler.start()
        assert scheduler.running
        scheduler.shutdown()
        assert not scheduler.running

    def test_statistics_carry_run_id(self, scheduler):
        stats = scheduler.run_daily(NOW)

        assert stats.sweep == "daily"
        assert stats.run_id and stats.run_id != "no-run-id"
        assert stats.completed_at is not None
        assert not stats.has_errors


class TestInactivityScenario:
    def test_warn_mark_delete_timeline(self, db_session, factory, scheduler, notifier):
        t0 = datetime(2024, 1, 1, 9, 0)
        user = factory.user(created_at=t0, last_login_at=t0)
        user_id = user.id
        factory.client(user)

        # Day 366: warned, nothing else
        weekly = scheduler.run_weekly(t0 + timedelta(days=366))
        daily = scheduler.run_daily(t0 + timedelta(days=366))
        assert weekly.warnings_sent == 1
        assert notifier.sent == [user.email]
        assert daily.accounts_marked == 0
        assert _user(db_session, user_id).marked_for_deletion_at is None

        # Day 457: inactive for warning + grace, marked for deletion
        daily = scheduler.run_daily(t0 + timedelta(days=457))
        assert daily.accounts_marked == 1
        assert daily.accounts_deleted == 0
        marked = _user(db_session, user_id)
        assert marked.marked_for_deletion_at == t0 + timedelta(days=457)
        assert marked.status == "inactive"

        # Day 486: still inside the deletion period
        daily = scheduler.run_daily(t0 + timedelta(days=486))
        assert daily.accounts_deleted == 0
        assert _user(db_session, user_id) is not None

        # Day 488: deleted
        daily = scheduler.run_daily(t0 + timedelta(days=488))
        assert daily.accounts_deleted == 1
        assert _user(db_session, user_id) is None

        actions = [
            e.action for e in db_session.query(RetentionLog)
            .filter(RetentionLog.user_id == user_id)
            .order_by(RetentionLog.timestamp)
        ]
        assert actions == [
            RetentionAction.INACTIVITY_WARNING_SENT,
            RetentionAction.ACCOUNT_MARKED_FOR_DELETION,
            RetentionAction.ACCOUNT_DELETED,
        ]

    def test_login_after_warning_restarts_the_clock(self, db_session, factory, scheduler, notifier):
        user = factory.user(
            created_at=NOW - timedelta(days=900),
            last_login_at=NOW - timedelta(days=380),
            inactivity_warning_date=NOW - timedelta(days=400),
        )

        daily = scheduler.run_daily(NOW)
        weekly = scheduler.run_weekly(NOW)

        assert daily.accounts_marked == 0
        assert weekly.warnings_sent == 1
        assert _user(db_session, user.id).inactivity_warning_date == NOW

    def test_sentinel_is_never_touched(self, db_session, scheduler, notifier):
        far = NOW + timedelta(days=5000)

        scheduler.run_weekly(far)
        scheduler.run_daily(far)

        sentinel = _user(db_session, SYSTEM_USER_ID)
        assert sentinel is not None
        assert sentinel.marked_for_deletion_at is None
        assert notifier.sent == []


class TestDailySweep:
    def _seed_expired(self, factory):
        owner = factory.user()
        client = factory.client(owner)
        factory.token(owner, token_type=TokenType.ACCESS, expires_at=NOW - timedelta(days=8))
        factory.token(owner, token_type=TokenType.ACCESS, expires_at=NOW - timedelta(days=6))
        factory.token(owner, token_type=TokenType.REFRESH, expires_at=NOW - timedelta(days=31))
        factory.token(
            owner, token_type=TokenType.REFRESH, expires_at=NOW + timedelta(days=30),
            is_revoked=True, revoked_at=NOW - timedelta(days=91),
        )
        factory.connection(owner, status=ConnectionStatus.DISCONNECTED, disconnected_at=NOW - timedelta(days=31))
        factory.connection(owner, status=ConnectionStatus.DISCONNECTED, disconnected_at=NOW - timedelta(days=29))
        account = factory.account(client)
        factory.transaction(account, date=NOW - timedelta(days=731))
        factory.transaction(account, date=NOW - timedelta(days=729))
        factory.insight(owner, created_at=NOW - timedelta(days=366))
        factory.query_history(client, created_at=NOW - timedelta(days=366))
        return owner

    def test_expiry_counts(self, db_session, factory, scheduler):
        self._seed_expired(factory)

        stats = scheduler.run_daily(NOW)

        assert stats.deleted["access_tokens"] == 1
        assert stats.deleted["refresh_tokens"] == 1
        assert stats.deleted["revoked_tokens"] == 1
        assert stats.deleted["connections"] == 1
        assert stats.deleted["transaction"] == 1
        assert stats.deleted["insight_metric"] == 1
        assert stats.deleted["query_history"] == 1
        assert db_session.query(Token).count() == 1
        assert db_session.query(BankConnection).count() == 1
        assert db_session.query(Transaction).count() == 1
        assert db_session.query(InsightMetric).count() == 0
        assert db_session.query(QueryHistory).count() == 0

    def test_ledger_entries(self, db_session, factory, scheduler):
        self._seed_expired(factory)

        scheduler.run_daily(NOW)

        assert _ledger_count(db_session, RetentionAction.EXPIRED_TOKENS_DELETED) == 1
        assert _ledger_count(db_session, RetentionAction.CONNECTION_DELETED) == 1
        assert _ledger_count(db_session, RetentionAction.STALE_RECORDS_DELETED) == 1
        entry = db_session.query(RetentionLog).filter(
            RetentionLog.action == RetentionAction.EXPIRED_TOKENS_DELETED
        ).one()
        assert entry.details["access_tokens"] == 1

    def test_daily_sweep_is_idempotent(self, db_session, factory, scheduler, state_machine):
        self._seed_expired(factory)
        closed = factory.full_user()
        state_machine.close_account(db_session, closed.id, now=NOW - timedelta(days=31))
        db_session.commit()

        first = scheduler.run_daily(NOW)
        ledger_after_first = _ledger_count(db_session)
        second = scheduler.run_daily(NOW)

        assert first.accounts_deleted == 1
        assert first.total_records_deleted > 0
        assert second.total_records_deleted == 0
        assert second.accounts_deleted == 0
        assert second.accounts_marked == 0
        assert _ledger_count(db_session) == ledger_after_first

    def test_nothing_to_do_writes_nothing(self, db_session, factory, scheduler):
        factory.full_user()

        stats = scheduler.run_daily(NOW)

        assert stats.total_records_deleted == 0
        assert _ledger_count(db_session) == 0


class TestDeletionSweepFailures:
    def _close(self, db_session, state_machine, *users):
        for user in users:
            state_machine.close_account(db_session, user.id, now=NOW - timedelta(days=31))
        db_session.commit()

    def test_critical_failure_does_not_stop_sweep(self, db_session, factory, scheduler, state_machine, monkeypatch):
        user_a = factory.full_user()
        user_b = factory.full_user()
        user_a_id, user_b_id = user_a.id, user_b.id
        self._close(db_session, state_machine, user_a, user_b)

        original = RetentionStore.bulk_delete

        def flaky(self, kind, selector):
            if kind.name == "client" and user_a_id in selector.values:
                raise RuntimeError("disk full")
            return original(self, kind, selector)

        monkeypatch.setattr(RetentionStore, "bulk_delete", flaky)
        stats = scheduler.run_daily(NOW)

        assert stats.errors == 1
        assert stats.has_errors
        assert stats.failed_user_ids == [user_a_id]
        assert stats.accounts_deleted == 1
        assert _user(db_session, user_b_id) is None
        survivor = _user(db_session, user_a_id)
        assert survivor is not None
        assert survivor.marked_for_deletion_at == NOW - timedelta(days=31)

        # Retried on the next run
        monkeypatch.setattr(RetentionStore, "bulk_delete", original)
        retry = scheduler.run_daily(NOW + timedelta(days=1))
        assert retry.accounts_deleted == 1
        assert _user(db_session, user_a_id) is None

    def test_non_critical_failure_is_counted(self, db_session, factory, scheduler, state_machine, monkeypatch):
        user_a = factory.full_user()
        user_b = factory.full_user()
        user_a_id, user_b_id = user_a.id, user_b.id
        client_ids = {c.client_id for c in user_a.clients}
        self._close(db_session, state_machine, user_a, user_b)

        original = RetentionStore.bulk_delete

        def flaky(self, kind, selector):
            if kind.name == "bank_user" and client_ids & set(selector.values):
                raise RuntimeError("lock timeout")
            return original(self, kind, selector)

        monkeypatch.setattr(RetentionStore, "bulk_delete", flaky)
        stats = scheduler.run_daily(NOW)

        assert stats.errors == 0
        assert stats.accounts_deleted == 2
        assert stats.deletion_warnings == 1
        assert _user(db_session, user_a_id) is None
        assert _user(db_session, user_b_id) is None


class TestWeeklySweep:
    def test_one_failure_does_not_block_others(self, db_session, factory, scheduler, notifier):
        stale = dict(created_at=NOW - timedelta(days=500), last_login_at=NOW - timedelta(days=400))
        broken = factory.user(email="broken@example.com", **stale)
        healthy = factory.user(email="healthy@example.com", **stale)
        factory.user(email="recent@example.com", last_login_at=NOW - timedelta(days=3))
        notifier.raise_for.add(broken.email)

        stats = scheduler.run_weekly(NOW)

        assert stats.errors == 0
        assert stats.warnings_sent == 2
        assert notifier.sent == [healthy.email]
        assert _user(db_session, broken.id).inactivity_warning_date == NOW

        # A recorded warning is not sent again the next week
        stats = scheduler.run_weekly(NOW + timedelta(days=7))
        assert stats.warnings_sent == 0
        assert notifier.sent == [healthy.email]

    def test_undeliverable_user_is_still_deleted(self, db_session, factory, scheduler, notifier):
        t0 = datetime(2024, 1, 1, 9, 0)
        user = factory.user(email="bounce@example.com", created_at=t0, last_login_at=t0)
        user_id = user.id
        notifier.fail_for.add(user.email)

        scheduler.run_weekly(t0 + timedelta(days=366))
        marked = scheduler.run_daily(t0 + timedelta(days=457))
        deleted = scheduler.run_daily(t0 + timedelta(days=488))

        assert marked.accounts_marked == 1
        assert deleted.accounts_deleted == 1
        assert _user(db_session, user_id) is None
        warning = db_session.query(RetentionLog).filter(
            RetentionLog.user_id == user_id,
            RetentionLog.action == RetentionAction.INACTIVITY_WARNING_SENT,
        ).one()
        assert warning.details["delivered"] is False


class TestMonthlySweep:
    def test_audit_is_persisted(self, db_session, factory, scheduler):
        owner = factory.user()
        factory.token(owner, expires_at=NOW - timedelta(days=8))

        stats = scheduler.run_monthly(NOW)

        assert stats.audit is not None
        assert stats.audit.expired_tokens == 1
        entry = db_session.query(RetentionLog).filter(
            RetentionLog.action == RetentionAction.MONTHLY_AUDIT
        ).one()
        assert entry.details["expired_tokens"] == 1
        assert entry.details["total_pending_deletions"] == stats.audit.total_pending_deletions
        # The audit is read-only
        assert db_session.query(Token).count() == 1
