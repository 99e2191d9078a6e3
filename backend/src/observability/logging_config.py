"""Structured logging for the retention workers.

Every record carries the run ID of the sweep (or service call) that emitted
it. Retention code passes its identifiers through ``extra=``; the JSON
formatter copies the known ones into the payload:

    logger.info("User deleted", extra={"user_id": str(user_id), "sweep": "daily"})
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .run_id import get_run_id

# Extra fields copied into the JSON payload when a log call provides them
CONTEXT_FIELDS = ("user_id", "connection_id", "kind", "action", "sweep")

PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(run_id)s] %(name)s: %(message)s"

# Libraries that are chatty at INFO during a sweep
QUIET_LOGGERS = ("sqlalchemy.engine", "celery.app.trace", "celery.worker.strategy")


class RunIDFilter(logging.Filter):
    """Stamp the current run ID onto every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = get_run_id()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, suitable for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "run_id": getattr(record, "run_id", None) or get_run_id(),
            "function": record.funcName,
            "message": record.getMessage(),
        }
        payload.update(
            {field: str(getattr(record, field)) for field in CONTEXT_FIELDS if hasattr(record, field)}
        )

        if record.exc_info:
            payload["error"] = str(record.exc_info[1])
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Install a single stdout handler on the root logger.

    Called once per worker process. Any handlers installed before (by
    Celery or a previous call) are replaced.

    Args:
        level: Log level name, case-insensitive
        json_format: JSON lines when True, a plain text line otherwise
    """
    numeric_level = logging.getLevelName(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(RunIDFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
