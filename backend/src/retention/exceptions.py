"""Typed errors raised by the retention lifecycle.

Callers branch on the exception type, never on log text:

- NotFound: the subject vanished or never existed. For sweeps this means
  the work is already done.
- ExpiredGracePeriod: a cancellation arrived after the scheduled deletion
  time. Nothing was changed.
- DeletionFailed: a critical step of a cascading delete failed and the
  whole transaction was rolled back. The candidate is retried next run.
"""

from typing import Optional
from uuid import UUID


class RetentionError(Exception):
    """Base class for retention lifecycle errors."""
    pass


class NotFound(RetentionError):
    """Raised when the subject of an operation does not exist."""
    pass


class UserNotFound(NotFound):
    def __init__(self, user_id: UUID):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class ConnectionNotFound(NotFound):
    def __init__(self, user_id: UUID, connection_id: UUID):
        self.user_id = user_id
        self.connection_id = connection_id
        super().__init__(f"Bank connection {connection_id} not found for user {user_id}")


class NotMarkedForDeletion(RetentionError):
    """Raised when cancelling deletion for a user that is not scheduled."""

    def __init__(self, user_id: UUID):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not marked for deletion")


class ExpiredGracePeriod(RetentionError):
    """Raised when a cancellation arrives at or after the deletion deadline."""

    def __init__(self, user_id: UUID, deadline):
        self.user_id = user_id
        self.deadline = deadline
        super().__init__(
            f"Deletion grace period has expired for user {user_id} "
            f"(deadline {deadline.isoformat()})"
        )


class DeletionFailed(RetentionError):
    """Critical failure of a cascading delete; the transaction was rolled back."""

    def __init__(self, user_id: UUID, cause: BaseException, kind: Optional[str] = None):
        self.user_id = user_id
        self.cause = cause
        self.kind = kind
        where = f" at {kind}" if kind else ""
        super().__init__(f"Deletion of user {user_id} failed{where}: {cause}")


class DeletionTimeout(RetentionError):
    """Raised inside the engine when a deletion exceeds its time budget."""

    def __init__(self, user_id: UUID, elapsed_seconds: float, limit_seconds: float):
        self.user_id = user_id
        self.elapsed_seconds = elapsed_seconds
        self.limit_seconds = limit_seconds
        super().__init__(
            f"Deletion of user {user_id} exceeded {limit_seconds:.1f}s "
            f"(elapsed {elapsed_seconds:.1f}s)"
        )


class ManifestError(RetentionError):
    """Raised when the entity manifest is inconsistent (cycle, unknown kind, schema drift)."""
    pass
