"""Observability helpers: structured logging and run correlation."""

from .logging_config import configure_logging, JSONFormatter, RunIDFilter
from .run_id import run_id_var, get_run_id, set_run_id, generate_run_id, run_context

__all__ = [
    "configure_logging",
    "JSONFormatter",
    "RunIDFilter",
    "run_id_var",
    "get_run_id",
    "set_run_id",
    "generate_run_id",
    "run_context",
]
