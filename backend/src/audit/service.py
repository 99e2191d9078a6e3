"""Admin action trail.

Admin log rows record what an administrator did on someone else's behalf.
The retention cascade never deletes them: when the acting admin is erased,
admin_id is re-pointed at the system sentinel and the erased id is kept in
original_admin_id.
"""

from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional, Dict, Any

from models.admin_log import AdminLog


class AdminAction:
    ACCOUNT_CLOSURE_ON_BEHALF = "ACCOUNT_CLOSURE_ON_BEHALF"
    ACCOUNT_DELETION_CANCELLED_ON_BEHALF = "ACCOUNT_DELETION_CANCELLED_ON_BEHALF"
    RETENTION_SETTINGS_UPDATED_ON_BEHALF = "RETENTION_SETTINGS_UPDATED_ON_BEHALF"


def log_admin_action(
    db: Session,
    admin_id: UUID,
    action: str,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AdminLog:
    """Append an admin log row inside the caller's transaction.

    The row is flushed, not committed; it becomes durable together with the
    lifecycle change it describes.

    Args:
        db: Database session
        admin_id: User who acted
        action: One of the AdminAction values
        details: JSON context, usually the affected user id
        ip_address: Origin address when the action came through an API
        user_agent: Origin User-Agent when the action came through an API

    Returns:
        AdminLog: The new row, with its id assigned
    """
    entry = AdminLog(
        admin_id=admin_id,
        action=action,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(entry)
    db.flush()
    return entry
