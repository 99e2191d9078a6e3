"""Integration tests for deletion verification, audits and exports."""

import pytest
from datetime import timedelta
from uuid import uuid4

from conftest import NOW
from models import (
    AdminLog,
    ConnectionStatus,
    RetentionLog,
    SYSTEM_USER_ID,
    Token,
    TokenType,
    UserStatus,
)
from retention.exceptions import UserNotFound
from retention.ledger import RetentionAction


class TestVerification:
    def test_closed_and_swept_user_is_completely_deleted(
        self, db_session, factory, state_machine, scheduler, auditor
    ):
        user = factory.full_user(clients=2, connections=5, role="admin")
        user_id = user.id
        for _ in range(3):
            factory.admin_log(user)
        state_machine.close_account(db_session, user.id, now=NOW)
        db_session.commit()

        stats = scheduler.run_daily(NOW + timedelta(days=30))
        assert stats.accounts_deleted == 1

        db_session.expire_all()
        report = auditor.verify(db_session, user_id, now=NOW + timedelta(days=30))

        assert report.is_completely_deleted
        assert report.remaining_data == {}
        assert report.related_data == {"admin_log": 3}
        assert db_session.query(AdminLog).filter(AdminLog.admin_id == SYSTEM_USER_ID).count() == 3

    def test_live_user_reports_every_kind(self, db_session, factory, auditor):
        user = factory.full_user()
        factory.admin_log(user)

        report = auditor.verify(db_session, user.id, now=NOW)

        assert not report.is_completely_deleted
        assert report.remaining_data == {
            "token": 1,
            "bank_connection": 1,
            "bank_user": 1,
            "transaction": 1,
            "account": 1,
            "query_history": 1,
            "client": 1,
            "insight_metric": 1,
            "notification_preference": 1,
            "admin_log": 1,
            "user": 1,
        }
        assert report.related_data == {}

    def test_unknown_user_has_nothing_left(self, db_session, auditor):
        report = auditor.verify(db_session, uuid4(), now=NOW)

        assert report.is_completely_deleted
        assert report.remaining_data == {}
        assert report.checked_at == NOW


class TestAudit:
    def test_counts_records_past_their_horizon(self, db_session, factory, state_machine, auditor):
        owner = factory.user()
        client = factory.client(owner)
        factory.token(owner, token_type=TokenType.ACCESS, expires_at=NOW - timedelta(days=8))
        factory.token(owner, token_type=TokenType.ACCESS, expires_at=NOW - timedelta(days=2))
        account = factory.account(client)
        factory.transaction(account, date=NOW - timedelta(days=731))
        factory.insight(owner, created_at=NOW - timedelta(days=366))
        factory.query_history(client, created_at=NOW - timedelta(days=366))
        factory.connection(owner, status=ConnectionStatus.DISCONNECTED, disconnected_at=NOW - timedelta(days=31))
        factory.user(created_at=NOW - timedelta(days=500), last_login_at=NOW - timedelta(days=400))
        closed = factory.user()
        state_machine.close_account(db_session, closed.id, now=NOW - timedelta(days=31))
        db_session.commit()

        report = auditor.audit(db_session, now=NOW)

        assert report.expired_tokens == 1
        assert report.stale_transactions == 1
        assert report.stale_insights == 2
        assert report.disconnected_connections == 1
        assert report.inactive_accounts == 1
        assert report.accounts_due_for_deletion == 1
        assert report.total_pending_deletions == 6
        assert report.audited_at == NOW

    def test_marked_but_active_user_is_not_due(self, db_session, factory, auditor):
        # Same filter as the daily deletion sweep: only closed or inactive accounts are due
        factory.user(marked_for_deletion_at=NOW - timedelta(days=60))
        factory.user(status=UserStatus.INACTIVE, marked_for_deletion_at=NOW - timedelta(days=60))
        factory.user(status=UserStatus.REVOKED, marked_for_deletion_at=NOW - timedelta(days=31))

        report = auditor.audit(db_session, now=NOW)

        assert report.accounts_due_for_deletion == 2

    def test_audit_changes_nothing(self, db_session, factory, auditor):
        owner = factory.user()
        factory.token(owner, expires_at=NOW - timedelta(days=30))

        auditor.audit(db_session, now=NOW)
        auditor.audit(db_session, now=NOW)

        assert db_session.query(Token).count() == 1
        assert db_session.query(RetentionLog).count() == 0


class TestExport:
    def test_export_contains_user_data(self, db_session, factory, auditor):
        user = factory.full_user(clients=2)

        export = auditor.export_user(db_session, user.id, now=NOW)
        db_session.commit()

        assert export.user_profile["email"] == user.email
        assert len(export.clients) == 2
        assert len(export.financial_data["accounts"]) == 2
        assert len(export.financial_data["transactions"]) == 2
        assert len(export.insights) == 1
        assert export.export_date == NOW

        entry = db_session.query(RetentionLog).filter(
            RetentionLog.action == RetentionAction.DATA_EXPORTED
        ).one()
        assert entry.user_id == user.id
        assert entry.details["clients"] == 2

    def test_export_does_not_leak_secrets(self, db_session, factory, auditor):
        user = factory.full_user()

        export = auditor.export_user(db_session, user.id, now=NOW)

        assert "client_secret" not in export.clients[0]

    @pytest.mark.parametrize("user_id", [uuid4(), SYSTEM_USER_ID])
    def test_export_unknown_user(self, db_session, auditor, user_id):
        with pytest.raises(UserNotFound):
            auditor.export_user(db_session, user_id, now=NOW)


class TestPolicyStatistics:
    def test_statistics(self, db_session, factory, state_machine, auditor):
        factory.full_user()
        factory.full_user()
        closed = factory.user()
        state_machine.close_account(db_session, closed.id, now=NOW)
        db_session.commit()

        stats = auditor.policy_stats(db_session, now=NOW)

        assert stats.users["total"] == 3
        assert stats.users["active"] == 2
        assert stats.users["inactive"] == 1
        assert stats.users["marked_for_deletion"] == 1
        assert stats.connections["active"] == 2
        assert stats.tokens["total"] == 2
        assert stats.recent_actions == {RetentionAction.ACCOUNT_CLOSURE_REQUESTED: 1}
        assert stats.retention_log_entries == 1


class TestPendingDeletions:
    def _close_three(self, db_session, factory, state_machine):
        users = []
        for days_ago in (1, 3, 2):
            user = factory.user()
            state_machine.close_account(db_session, user.id, now=NOW - timedelta(days=days_ago))
            users.append(user)
        db_session.commit()
        return users

    def test_pagination_soonest_first(self, db_session, factory, state_machine, auditor):
        latest, earliest, middle = self._close_three(db_session, factory, state_machine)

        first = auditor.pending_deletions(db_session, page=1, limit=2)
        second = auditor.pending_deletions(db_session, page=2, limit=2)

        assert first.total == 3
        assert first.pages == 2
        assert [i.user_id for i in first.items] == [earliest.id, middle.id]
        assert [i.user_id for i in second.items] == [latest.id]
        assert first.items[0].scheduled_deletion_date == NOW - timedelta(days=3) + timedelta(days=30)

    def test_empty(self, db_session, auditor):
        page = auditor.pending_deletions(db_session)

        assert page.items == []
        assert page.total == 0

    @pytest.mark.parametrize("page,limit", [(0, 20), (1, 0), (1, 101)])
    def test_invalid_paging(self, db_session, auditor, page, limit):
        with pytest.raises(ValueError):
            auditor.pending_deletions(db_session, page=page, limit=limit)
