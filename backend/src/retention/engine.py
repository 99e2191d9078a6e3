"""Cascading deletion engine.

Removes one user and everything that hangs off it inside a single
transaction, following the resolver's plan. Critical kinds abort the whole
deletion on failure; every other kind runs in a SAVEPOINT and a failure
there is reported as a DeletionWarning while the rest of the cascade
proceeds.
"""

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from models import SYSTEM_USER_ID, utcnow
from .exceptions import DeletionFailed, DeletionTimeout
from .ledger import RetentionAction, record_retention_event
from .policy import Disposition
from .resolver import DependencyGraphResolver, ResolvedStep
from .schemas import DeletionResult, DeletionWarning
from .store import RetentionStore

logger = logging.getLogger(__name__)


class CascadingDeletionEngine:
    """Executes the ordered deletion plan for one user."""

    def __init__(
        self,
        resolver: DependencyGraphResolver,
        timeout_seconds: float = 120.0,
        sentinel_id: UUID = SYSTEM_USER_ID,
    ):
        self.resolver = resolver
        self.timeout_seconds = timeout_seconds
        self.sentinel_id = sentinel_id

    def delete_user(
        self,
        store: RetentionStore,
        user_id: UUID,
        reason: str = "retention_policy",
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> DeletionResult:
        """Delete a user and all of its dependents.

        With commit=False the caller owns the transaction: the engine only
        flushes and leaves commit/rollback to the caller.

        Raises:
            DeletionFailed: a critical kind, the deadline or the commit failed.
                The transaction was rolled back (when owned by the engine).
        """
        if user_id == self.sentinel_id:
            raise ValueError("The system sentinel user can never be deleted")

        now = now or utcnow()
        session = store.session
        started = time.monotonic()
        current_kind: Optional[str] = None

        try:
            steps = self.resolver.resolve(store, user_id)
            if not steps:
                logger.info(
                    f"User {user_id} no longer exists, skipping deletion",
                    extra={"user_id": str(user_id)},
                )
                return DeletionResult(user_id=user_id, skipped=True)

            store.set_statement_timeout(self.timeout_seconds)

            per_kind_counts: Dict[str, int] = {}
            anonymized_counts: Dict[str, int] = {}
            warnings: List[DeletionWarning] = []

            for step in steps:
                current_kind = step.kind.name
                self._check_deadline(user_id, started)

                if step.kind.critical:
                    count = self._apply(store, step, now)
                else:
                    try:
                        with store.savepoint():
                            count = self._apply(store, step, now)
                    except Exception as e:
                        logger.warning(
                            f"Non-critical deletion step {step.kind.name} failed for user {user_id}: {e}",
                            extra={"user_id": str(user_id), "kind": step.kind.name},
                            exc_info=True,
                        )
                        warnings.append(DeletionWarning(kind=step.kind.name, error=str(e)))
                        continue

                if step.disposition == Disposition.ANONYMIZE:
                    anonymized_counts[step.kind.name] = count
                else:
                    per_kind_counts[step.kind.name] = count

            current_kind = None
            self._check_deadline(user_id, started)

            duration_ms = int((time.monotonic() - started) * 1000)
            record_retention_event(
                session,
                RetentionAction.ACCOUNT_DELETED,
                user_id=user_id,
                details={
                    "reason": reason,
                    "deleted_counts": per_kind_counts,
                    "anonymized_counts": anonymized_counts,
                    "warnings": [w.model_dump() for w in warnings],
                    # Parent keys of every step, so verification can still
                    # find rows reachable through former clients and accounts
                    "selectors": {s.kind.name: s.selector.to_dict() for s in steps},
                    "duration_ms": duration_ms,
                },
                timestamp=now,
            )

            if commit:
                session.commit()
            else:
                session.flush()

        except DeletionFailed:
            if commit:
                session.rollback()
            raise
        except Exception as e:
            if commit:
                session.rollback()
            logger.error(
                f"Deletion of user {user_id} failed: {e}",
                extra={"user_id": str(user_id), "kind": current_kind},
                exc_info=True,
            )
            raise DeletionFailed(user_id, e, kind=current_kind) from e

        result = DeletionResult(
            user_id=user_id,
            per_kind_counts=per_kind_counts,
            anonymized_counts=anonymized_counts,
            warnings=warnings,
            duration_ms=duration_ms,
        )
        logger.info(
            f"Deleted user {user_id}: {result.total_deleted} records, "
            f"{sum(anonymized_counts.values())} anonymized, {len(warnings)} warnings",
            extra={"user_id": str(user_id), "action": RetentionAction.ACCOUNT_DELETED},
        )
        return result

    def _apply(self, store: RetentionStore, step: ResolvedStep, now: datetime) -> int:
        if step.disposition == Disposition.ANONYMIZE:
            return store.bulk_anonymize(step.kind, step.selector, self.sentinel_id, now=now)
        return store.bulk_delete(step.kind, step.selector)

    def _check_deadline(self, user_id: UUID, started: float) -> None:
        elapsed = time.monotonic() - started
        if elapsed > self.timeout_seconds:
            raise DeletionTimeout(user_id, elapsed, self.timeout_seconds)
