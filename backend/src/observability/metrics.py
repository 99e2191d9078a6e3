"""Prometheus metrics for the retention workers.

Counters are updated at the end of every sweep and by the deletion engine
callers; a worker exposes them through prometheus_client's registry.
"""

from prometheus_client import Counter, Histogram, Gauge

# Sweep metrics
sweeps_total = Counter(
    "retention_sweeps_total",
    "Total retention sweeps executed",
    ["sweep", "status"]  # sweep: daily|weekly|monthly, status: success|error
)

sweep_duration_seconds = Histogram(
    "retention_sweep_duration_seconds",
    "Time spent on one retention sweep in seconds",
    ["sweep"],
    buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 3600.0]
)

# Deletion metrics
records_deleted_total = Counter(
    "retention_records_deleted_total",
    "Total records removed by retention sweeps",
    ["category"]  # category: access_tokens|refresh_tokens|connections|transaction|...
)

user_deletions_total = Counter(
    "retention_user_deletions_total",
    "Cascading user deletions by outcome",
    ["status"]  # status: deleted|skipped|failed
)

deletion_warnings_total = Counter(
    "retention_deletion_warnings_total",
    "Non-critical kind failures inside committed user deletions",
    ["kind"]
)

# Lifecycle metrics
lifecycle_transitions_total = Counter(
    "retention_lifecycle_transitions_total",
    "Lifecycle transitions applied by sweeps",
    ["transition"]  # transition: warned|marked
)

pending_deletions = Gauge(
    "retention_pending_deletions",
    "Records past their retention horizon at the last monthly audit"
)
