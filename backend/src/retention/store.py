"""Table-level operations used by the deletion engine and the sweeps.

All statements go through the caller's Session, so they take part in its
transaction. The engine never touches SQL directly; tests subclass this
store to inject failures at a chosen kind.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import Uuid, delete, func, select, text
from sqlalchemy.orm import Session

from models import User, utcnow
from .manifest import EntityKind
from .resolver import Selector

logger = logging.getLogger(__name__)

# Batch size for IN lists to keep statements bounded
DELETION_BATCH_SIZE = 1000


def _batches(values: Sequence, size: int = DELETION_BATCH_SIZE) -> Iterator[List]:
    values = list(values)
    for start in range(0, len(values), size):
        yield values[start:start + size]


class RetentionStore:
    """Thin wrapper around a Session for manifest-driven statements."""

    def __init__(self, session: Session):
        self.session = session

    @property
    def dialect(self) -> str:
        return self.session.get_bind().dialect.name

    def _column(self, kind: EntityKind, name: str):
        return kind.table.c[name]

    def _coerce(self, column, values: Sequence) -> List:
        # Selector values read back from the ledger are strings
        if isinstance(column.type, Uuid):
            return [v if isinstance(v, UUID) else UUID(str(v)) for v in values]
        return list(values)

    def select_values(self, kind: EntityKind, column: str, selector: Selector) -> List:
        """Distinct values of `column` for the rows matched by `selector`."""
        if selector.is_empty:
            return []
        target = self._column(kind, column)
        match = self._column(kind, selector.column)
        found = []
        for batch in _batches(self._coerce(match, selector.values)):
            stmt = select(target).where(match.in_(batch)).distinct()
            found.extend(self.session.execute(stmt).scalars().all())
        return list(dict.fromkeys(found))

    def count(self, kind: EntityKind, selector: Selector) -> int:
        if selector.is_empty:
            return 0
        match = self._column(kind, selector.column)
        total = 0
        for batch in _batches(self._coerce(match, selector.values)):
            stmt = select(func.count()).select_from(kind.table).where(match.in_(batch))
            total += self.session.execute(stmt).scalar_one()
        return total

    def bulk_delete(self, kind: EntityKind, selector: Selector) -> int:
        """Delete every row matched by `selector`; returns the row count."""
        if selector.is_empty:
            return 0
        match = self._column(kind, selector.column)
        deleted = 0
        for batch in _batches(self._coerce(match, selector.values)):
            result = self.session.execute(delete(kind.table).where(match.in_(batch)))
            deleted += result.rowcount or 0
        return deleted

    def delete_older_than(self, kind: EntityKind, column: str, cutoff: datetime, *criteria) -> int:
        """Delete rows of `kind` whose `column` is before `cutoff`."""
        stmt = delete(kind.table).where(self._column(kind, column) < cutoff, *criteria)
        result = self.session.execute(stmt)
        return result.rowcount or 0

    def bulk_anonymize(
        self,
        kind: EntityKind,
        selector: Selector,
        sentinel_id: UUID,
        now: Optional[datetime] = None,
    ) -> int:
        """Re-point the actor column at the sentinel and keep the erased id.

        The erased id moves to `original_actor_column` and is also folded
        into the details JSON, so the row still says who acted.
        """
        if selector.is_empty:
            return 0
        now = now or utcnow()
        match = getattr(kind.model, selector.column)
        rows = []
        for batch in _batches(self._coerce(self._column(kind, selector.column), selector.values)):
            stmt = select(kind.model).where(match.in_(batch))
            rows.extend(self.session.execute(stmt).scalars().all())

        for row in rows:
            original = getattr(row, kind.actor_column)
            if kind.original_actor_column and getattr(row, kind.original_actor_column) is None:
                setattr(row, kind.original_actor_column, original)
            if kind.details_column:
                details = dict(getattr(row, kind.details_column) or {})
                details["anonymized"] = {
                    "original_actor_id": str(original),
                    "anonymized_at": now.isoformat(),
                }
                setattr(row, kind.details_column, details)
            setattr(row, kind.actor_column, sentinel_id)

        self.session.flush()
        return len(rows)

    @contextmanager
    def savepoint(self):
        """Run a block in a SAVEPOINT; a failure rolls back only the block."""
        with self.session.begin_nested():
            yield

    def lock_user(self, user_id: UUID) -> Optional[User]:
        """Load a user row with FOR UPDATE (a no-op on SQLite)."""
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def set_statement_timeout(self, seconds: float) -> None:
        """Bound every statement of the current transaction (PostgreSQL only)."""
        if self.dialect != "postgresql":
            return
        millis = int(seconds * 1000)
        self.session.execute(text(f"SET LOCAL statement_timeout = {millis}"))
