"""Admin audit trail."""

from .service import AdminAction, log_admin_action

__all__ = ["AdminAction", "log_admin_action"]
