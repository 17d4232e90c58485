"""Prometheus metrics for fragscrape."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("fragscrape", "Fragrance scraper application info")
app_info.info({"version": "0.1.0", "name": "fragscrape"})

# Fetch metrics
page_fetches_total = Counter(
    "page_fetches_total",
    "Total number of page fetch attempts",
    ["client", "status"],
)

page_fetch_errors_total = Counter(
    "page_fetch_errors_total",
    "Total number of failed page fetches",
    ["client", "error_type"],
)

page_fetch_duration_seconds = Histogram(
    "page_fetch_duration_seconds",
    "Time spent fetching pages",
    ["client"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Credential pool metrics
credential_used_bytes = Gauge(
    "proxy_credential_used_bytes",
    "Bytes consumed by a proxy credential at the last quota read",
    ["identity"],
)

credential_pool_size = Gauge(
    "proxy_credential_pool_size",
    "Number of proxy credentials by status",
    ["status"],
)

pool_events_total = Counter(
    "proxy_pool_events_total",
    "Credential pool notifications emitted",
    ["event"],
)

quota_check_failures_total = Counter(
    "proxy_quota_check_failures_total",
    "Quota reads that failed and were treated as near-limit",
)

# Extraction metrics
missing_fields_total = Counter(
    "extraction_missing_fields_total",
    "Fields that no extraction strategy produced",
    ["field"],
)

# Cache metrics
cache_lookups_total = Counter(
    "cache_lookups_total",
    "Cache lookups by kind and outcome",
    ["kind", "outcome"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

# Encryption metrics
decryption_failures_total = Counter(
    "decryption_failures_total",
    "Secrets that could not be decrypted",
    ["exception_type"],
)


def record_fetch_success(client: str, duration: float):
    """Record a successful page fetch."""
    page_fetches_total.labels(client=client, status="success").inc()
    page_fetch_duration_seconds.labels(client=client).observe(duration)


def record_fetch_error(client: str, error_type: str, duration: float):
    """Record a failed page fetch."""
    page_fetches_total.labels(client=client, status="error").inc()
    page_fetch_errors_total.labels(client=client, error_type=error_type).inc()
    page_fetch_duration_seconds.labels(client=client).observe(duration)


def record_credential_usage(identity: str, used_bytes: int):
    credential_used_bytes.labels(identity=identity).set(used_bytes)


def update_pool_size(status_counts: dict[str, int]):
    """Update the pool size gauge with current counts."""
    for status, count in status_counts.items():
        credential_pool_size.labels(status=status).set(count)


def record_pool_event(event: str):
    pool_events_total.labels(event=event).inc()


def record_quota_check_failure():
    quota_check_failures_total.inc()


def record_missing_field(field: str):
    missing_fields_total.labels(field=field).inc()


def record_cache_lookup(kind: str, hit: bool):
    cache_lookups_total.labels(kind=kind, outcome="hit" if hit else "miss").inc()


def record_decryption_failure(exception_type: str):
    decryption_failures_total.labels(exception_type=exception_type).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
