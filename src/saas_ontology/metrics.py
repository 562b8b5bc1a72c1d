"""Pipeline metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge, Histogram

# Run metrics
analytics_runs_total = Counter(
    "analytics_runs_total",
    "Total analytics pipeline runs",
    labelnames=["status"],  # completed, failed
)

analytics_step_duration_seconds = Histogram(
    "analytics_step_duration_seconds",
    "Duration of each analytics pipeline step",
    labelnames=["step"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

# Findings
analytics_patterns_detected_total = Counter(
    "analytics_patterns_detected_total",
    "Total behavioral patterns persisted",
    labelnames=["pattern_type"],
)

analytics_customers_scored = Gauge(
    "analytics_customers_scored",
    "Number of customers health-scored in the latest run",
)

analytics_total_mrr_dollars = Gauge(
    "analytics_total_mrr_dollars",
    "Total MRR across segments in the latest run",
)
