"""Pytest fixtures for the retention lifecycle.

Provides reusable test fixtures for:
- In-memory SQLite database with foreign keys enforced
- Retention components wired the same way the workers wire them
- A recording notification sender
- A data factory for users and everything hanging off them

Usage:
    def test_close(service, factory):
        user = factory.user()
        result = service.handle_account_closure(user.id, now=NOW)
"""

import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Generator, List, Optional
from uuid import uuid4

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

TEST_MASTER_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

# Set environment variables BEFORE any imports to ensure they take effect
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_MASTER_KEY", TEST_MASTER_KEY)
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import pytest
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from database import build_engine, build_session_factory, init_db
from models import (
    Account,
    AdminLog,
    BankConnection,
    BankUser,
    Client,
    ClientStatus,
    ConnectionStatus,
    InsightMetric,
    NotificationPreference,
    QueryHistory,
    Token,
    TokenType,
    Transaction,
    User,
)
from retention.auditor import ComplianceAuditor
from retention.engine import CascadingDeletionEngine
from retention.lifecycle import LifecycleStateMachine
from retention.policy import RetentionPolicy
from retention.resolver import DependencyGraphResolver
from retention.scheduler import RetentionScheduler
from retention.service import RetentionService
from vault import CredentialVault

# Fixed clock used across the suite
NOW = datetime(2025, 6, 1, 12, 0, 0)


class RecordingNotificationSender:
    """Notification sender that records recipients and can fail on demand."""

    def __init__(self):
        self.sent: List[str] = []
        self.fail_for: set = set()
        self.raise_for: set = set()

    def send_inactivity_warning(self, user: User) -> bool:
        if user.email in self.raise_for:
            raise ConnectionError(f"SMTP unavailable for {user.email}")
        if user.email in self.fail_for:
            return False
        self.sent.append(user.email)
        return True


class DataFactory:
    """Creates committed rows for tests."""

    def __init__(self, session: Session):
        self.session = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def user(
        self,
        email: Optional[str] = None,
        last_login_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        role: str = "user",
        **kwargs,
    ) -> User:
        n = self._next()
        created_at = created_at or NOW - timedelta(days=30)
        return self._save(User(
            email=email or f"user{n}@example.com",
            client_name=f"User {n}",
            role=role,
            last_login_at=last_login_at or created_at,
            created_at=created_at,
            **kwargs,
        ))

    def client(self, user: User, status: str = ClientStatus.ACTIVE) -> Client:
        n = self._next()
        return self._save(Client(
            user_id=user.id,
            client_id=f"client-{n}",
            client_secret=f"secret-{n}",
            status=status,
        ))

    def token(
        self,
        user: User,
        client: Optional[Client] = None,
        token_type: str = TokenType.ACCESS,
        expires_at: Optional[datetime] = None,
        is_revoked: bool = False,
        revoked_at: Optional[datetime] = None,
    ) -> Token:
        n = self._next()
        return self._save(Token(
            user_id=user.id,
            client_id=client.client_id if client else None,
            token_type=token_type,
            token=f"token-{n}-{uuid4().hex}",
            expires_at=expires_at or NOW + timedelta(days=1),
            is_revoked=is_revoked,
            revoked_at=revoked_at,
        ))

    def connection(
        self,
        user: User,
        status: str = ConnectionStatus.ACTIVE,
        disconnected_at: Optional[datetime] = None,
    ) -> BankConnection:
        n = self._next()
        return self._save(BankConnection(
            user_id=user.id,
            item_id=f"item-{n}",
            access_token=f"access-sandbox-{n}",
            institution_id=f"ins_{n}",
            institution_name=f"Bank {n}",
            status=status,
            disconnected_at=disconnected_at,
        ))

    def bank_user(self, client: Client) -> BankUser:
        n = self._next()
        return self._save(BankUser(client_id=client.client_id, bank_user_id=f"bu-{n}", name=f"Bank User {n}"))

    def account(self, client: Client) -> Account:
        n = self._next()
        return self._save(Account(
            client_id=client.client_id,
            bank_user_id=f"bu-{n}",
            account_id=f"acc-{n}",
            name=f"Checking {n}",
            type="depository",
            subtype="checking",
            balance=Decimal("100.00"),
        ))

    def transaction(self, account: Account, date: Optional[datetime] = None) -> Transaction:
        n = self._next()
        return self._save(Transaction(
            account_id=account.id,
            transaction_id=f"txn-{n}",
            date=date or NOW - timedelta(days=10),
            description=f"Purchase {n}",
            amount=Decimal("-12.50"),
            category="shopping",
        ))

    def query_history(self, client: Client, created_at: Optional[datetime] = None) -> QueryHistory:
        return self._save(QueryHistory(
            client_id=client.client_id,
            query="spending last month",
            created_at=created_at or NOW - timedelta(days=10),
        ))

    def insight(self, user: User, created_at: Optional[datetime] = None) -> InsightMetric:
        n = self._next()
        return self._save(InsightMetric(
            user_id=user.id,
            query_id=f"q-{n}",
            query="How much did I spend?",
            query_type="spending",
            created_at=created_at or NOW - timedelta(days=10),
        ))

    def notification_preference(self, user: User) -> NotificationPreference:
        return self._save(NotificationPreference(user_id=user.id))

    def admin_log(self, admin: User, action: str = "USER_SUSPENDED") -> AdminLog:
        return self._save(AdminLog(admin_id=admin.id, action=action, details={"target": "someone"}))

    def full_user(self, clients: int = 1, connections: int = 1, **kwargs) -> User:
        """A user with one of everything per client."""
        user = self.user(**kwargs)
        for _ in range(clients):
            client = self.client(user)
            self.token(user, client)
            self.bank_user(client)
            account = self.account(client)
            self.transaction(account)
            self.query_history(client)
        for _ in range(connections):
            self.connection(user)
        self.insight(user)
        self.notification_preference(user)
        return user


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test; one shared connection."""
    engine = build_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    factory = build_session_factory(db_engine)
    init_db(db_engine, factory)
    return factory


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def factory(db_session) -> DataFactory:
    return DataFactory(db_session)


@pytest.fixture
def policy() -> RetentionPolicy:
    return RetentionPolicy()


@pytest.fixture
def resolver(policy) -> DependencyGraphResolver:
    return DependencyGraphResolver(policy)


@pytest.fixture
def deletion_engine(resolver) -> CascadingDeletionEngine:
    return CascadingDeletionEngine(resolver, timeout_seconds=30.0)


@pytest.fixture
def notifier() -> RecordingNotificationSender:
    return RecordingNotificationSender()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_MASTER_KEY)


@pytest.fixture
def state_machine(policy, deletion_engine, notifier, vault) -> LifecycleStateMachine:
    return LifecycleStateMachine(policy, deletion_engine, notifier, vault=vault)


@pytest.fixture
def auditor(policy, resolver) -> ComplianceAuditor:
    return ComplianceAuditor(policy, resolver)


@pytest.fixture
def scheduler(session_factory, policy, resolver, state_machine, auditor):
    scheduler = RetentionScheduler(session_factory, policy, resolver, state_machine, auditor)
    scheduler.start()
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def service(session_factory, state_machine, auditor) -> RetentionService:
    return RetentionService(session_factory, state_machine, auditor)
