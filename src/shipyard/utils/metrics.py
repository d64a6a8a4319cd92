"""Prometheus metrics for pipeline runs."""

from prometheus_client import Counter, Histogram

PIPELINE_RUNS = Counter(
    "shipyard_pipeline_runs_total",
    "Pipeline runs by outcome",
    ["outcome"],
)

STAGE_DURATION = Histogram(
    "shipyard_stage_duration_seconds",
    "Pipeline stage duration",
    ["stage"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
)

STAGE_FAILURES = Counter(
    "shipyard_stage_failures_total",
    "Pipeline stage failures by error class",
    ["stage", "error"],
)
