"""Prometheus metrics for the controller."""

from prometheus_client import Counter, Histogram

translate_duration = Histogram(
    "htnn_httpfilterpolicy_translate_duration_seconds",
    "Time spent translating HTTPFilterPolicies into EnvoyFilters",
)

reconcile_total = Counter(
    "htnn_httpfilterpolicy_reconcile_total",
    "Total number of reconciliations",
    ["result"],
)

envoyfilter_writes = Counter(
    "htnn_envoyfilter_writes_total",
    "Total number of EnvoyFilter writes",
    ["operation"],
)
