"""Inactivity warning delivery.

The lifecycle only needs a yes/no answer from the sender: False (or an
exception) means the warning was not delivered and the user is picked up
again by the next weekly sweep.
"""

import logging
from typing import Protocol

from models import User

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send_inactivity_warning(self, user: User) -> bool:
        ...


class LoggingNotificationSender:
    """Sender used when no mail transport is configured; only logs."""

    def send_inactivity_warning(self, user: User) -> bool:
        logger.info(
            f"Inactivity warning for {user.email}",
            extra={"user_id": str(user.id), "action": "inactivity_warning"},
        )
        return True
