"""
Prometheus metrics for the categorization pipeline (exposed at /metrics)
"""
from prometheus_client import Counter, Histogram

categorization_outcomes = Counter(
    "receipt_categorization_outcomes_total",
    "Final categorization outcomes",
    ["outcome"],  # rules | llm | rules_fallback | needs_review
)

llm_calls = Counter(
    "receipt_categorization_llm_calls_total",
    "LLM classifier calls by result",
    ["result"],  # success | <LLMFailureReason>
)

llm_latency_seconds = Histogram(
    "receipt_categorization_llm_latency_seconds",
    "Latency of LLM classifier calls",
    buckets=(0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0),
)

audit_write_failures = Counter(
    "receipt_categorization_audit_write_failures_total",
    "Prediction audit inserts that failed and were skipped",
)
