"""Celery tasks for the retention sweeps.

Tasks:
- retention.daily: expiry, deletion and marking sweep (02:00 UTC)
- retention.weekly: inactivity warnings (Monday 03:00 UTC)
- retention.monthly: compliance audit (1st of the month, 04:00 UTC)

The worker process builds its RetentionComponents once (see celery_app's
worker_process_init handler) and the tasks only look them up. Tasks never
raise: failures are logged and reported in the returned statistics.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from celery import shared_task

from .service import RetentionComponents, build_retention_components

logger = logging.getLogger(__name__)

_components: Optional[RetentionComponents] = None


def install_components(components: Optional[RetentionComponents]) -> None:
    """Set (or clear, with None) the components used by this process."""
    global _components
    _components = components


def get_components() -> RetentionComponents:
    """Return the process components, building and starting them on first use."""
    global _components
    if _components is None:
        _components = build_retention_components()
        _components.scheduler.start()
    return _components


def _parse_now(now: Optional[str]) -> Optional[datetime]:
    """ISO timestamp to naive UTC. Offset-aware values are converted first."""
    if not now:
        return None
    parsed = datetime.fromisoformat(now)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _run(sweep: str, now: Optional[str]) -> Dict[str, Any]:
    logger.info(f"Retention {sweep} task started", extra={"sweep": sweep})
    try:
        scheduler = get_components().scheduler
        run = getattr(scheduler, f"run_{sweep}")
        statistics = run(_parse_now(now))
    except Exception as e:
        logger.error(
            f"Retention {sweep} task failed",
            exc_info=True,
            extra={"sweep": sweep},
        )
        # Return error status but don't raise (allow task to complete)
        return {"status": "failed", "sweep": sweep, "error": str(e), "total_deleted": 0}

    result = {
        "status": "completed_with_errors" if statistics.has_errors else "completed",
        **statistics.model_dump(mode="json"),
        "total_deleted": statistics.total_records_deleted,
        "has_errors": statistics.has_errors,
        "is_anomaly": statistics.is_anomaly,
    }
    logger.info(f"Retention {sweep} task completed", extra={"sweep": sweep})
    return result


@shared_task(name="retention.daily", bind=True)
def retention_daily_task(self, now: Optional[str] = None) -> Dict[str, Any]:
    """Run the daily sweep.

    Idempotent: running twice in succession finds nothing more to delete.

    Args:
        now: Optional ISO timestamp to evaluate the policy at; naive values
            are taken as UTC, offset-aware ones are converted to UTC
    """
    return _run("daily", now)


@shared_task(name="retention.weekly", bind=True)
def retention_weekly_task(self, now: Optional[str] = None) -> Dict[str, Any]:
    """Send inactivity warnings to users past the warning threshold."""
    return _run("weekly", now)


@shared_task(name="retention.monthly", bind=True)
def retention_monthly_task(self, now: Optional[str] = None) -> Dict[str, Any]:
    """Run the compliance audit and persist it in the ledger."""
    return _run("monthly", now)
