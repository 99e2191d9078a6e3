"""Celery application for the retention workers.

Beat schedule (UTC):
- retention.daily: every day at 02:00
- retention.weekly: Mondays at 03:00
- retention.monthly: first day of the month at 04:00

Run a worker with beat:
    celery -A celery_app worker --beat --loglevel=info
"""

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown

from config import get_settings
from observability.logging_config import configure_logging

logger = logging.getLogger(__name__)

settings = get_settings()

celery_app = Celery(
    "ledgerkeep",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["retention.tasks"],
)

celery_app.conf.update(
    timezone="UTC",
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # A sweep that dies mid-run is simply picked up by the next schedule
    task_acks_late=False,
    worker_hijack_root_logger=False,
)

celery_app.conf.beat_schedule = {
    "retention-daily": {
        "task": "retention.daily",
        "schedule": crontab(hour=2, minute=0),
        "options": {
            "expires": 3600,  # Task expires after 1 hour if not picked up
        },
    },
    "retention-weekly": {
        "task": "retention.weekly",
        "schedule": crontab(hour=3, minute=0, day_of_week=1),
        "options": {"expires": 3600},
    },
    "retention-monthly": {
        "task": "retention.monthly",
        "schedule": crontab(hour=4, minute=0, day_of_month=1),
        "options": {"expires": 3600},
    },
}


@worker_process_init.connect
def start_retention_components(**kwargs):
    """Build and start the retention components in each worker process."""
    from retention.service import build_retention_components
    from retention.tasks import install_components

    configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    components = build_retention_components(settings)
    components.scheduler.start()
    install_components(components)
    logger.info("Retention components initialized for worker process")


@worker_process_shutdown.connect
def stop_retention_components(**kwargs):
    from retention import tasks

    if tasks._components is not None:
        tasks._components.shutdown()
        tasks.install_components(None)
