"""Prometheus metrics for the decision pipeline.

HTTP-level metrics live in services.api.metrics; these cover the engine itself
so they are recorded regardless of which surface drives it.

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram

# Reference data cache
reference_cache_requests_total = Counter(
    "reference_cache_requests_total",
    "Reference data cache lookups",
    ["result"],  # hit, miss
)

reference_cache_loads_total = Counter(
    "reference_cache_loads_total",
    "Reference data loads from the backing store",
    ["status"],  # success, failed
)

# Call governor
reasoning_call_attempts_total = Counter(
    "reasoning_call_attempts_total",
    "Reasoning-service call attempts",
    ["operation", "outcome"],  # outcome: success or an error category
)

reasoning_tokens_total = Counter(
    "reasoning_tokens_total",
    "Tokens consumed by reasoning-service calls",
    ["provider", "direction"],  # direction: input, output
)

rate_limit_wait_seconds = Histogram(
    "rate_limit_wait_seconds",
    "Time spent waiting for a rate-limit token",
    buckets=(0.0, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

# Orchestration
analysis_requests_total = Counter(
    "analysis_requests_total",
    "Analysis requests by terminal state",
    ["state"],  # done, rejected, failed, timed_out
)

analysis_duration_seconds = Histogram(
    "analysis_duration_seconds",
    "End-to-end analysis duration in seconds",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

template_mode_total = Counter(
    "template_mode_total",
    "Disclosure mode selected per request",
    ["mode"],  # template_only, free_analysis
)
