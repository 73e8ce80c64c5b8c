"""
Runtime observability — Prometheus counters for the loader pipeline.

The runtime only produces the metrics; scraping/export transport belongs
to the host process (``generate_latest`` is re-exported for convenience).
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

__all__ = [
    "DEFINITIONS_LOADED",
    "VALIDATION_FAILURES",
    "LOAD_ERRORS",
    "PUBLISH_FAILURES",
    "RELOAD_LATENCY",
    "LOAD_PASS_LATENCY",
    "metrics_snapshot",
    "generate_latest",
    "CONTENT_TYPE_LATEST",
]


# ── Loader Metrics ───────────────────────────────────────────────────

DEFINITIONS_LOADED = Counter(
    "definitions_loaded_total",
    "Definitions accepted into the registry",
    ["trigger"],
    namespace="flowdeck",
)

VALIDATION_FAILURES = Counter(
    "validation_failures_total",
    "Definitions rejected by structural validation",
    ["trigger"],
    namespace="flowdeck",
)

LOAD_ERRORS = Counter(
    "load_errors_total",
    "Definition files that failed to load",
    ["error_code"],
    namespace="flowdeck",
)

PUBLISH_FAILURES = Counter(
    "publish_failures_total",
    "Accepted definitions that could not be published",
    namespace="flowdeck",
)

RELOAD_LATENCY = Histogram(
    "reload_latency_seconds",
    "Single-file hot reload latency",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1, 5],
    namespace="flowdeck",
)

LOAD_PASS_LATENCY = Histogram(
    "load_pass_latency_seconds",
    "Full discovery pass latency",
    buckets=[0.05, 0.1, 0.5, 1, 2, 5, 10, 30],
    namespace="flowdeck",
)


def _counter_total(counter: Counter) -> float:
    total = 0.0
    for metric in counter.collect():
        for sample in metric.samples:
            if sample.name.endswith("_total"):
                total += sample.value
    return total


def metrics_snapshot() -> dict[str, float]:
    """Summed counter values, for status endpoints and debug logging."""
    return {
        "definitions_loaded": _counter_total(DEFINITIONS_LOADED),
        "validation_failures": _counter_total(VALIDATION_FAILURES),
        "load_errors": _counter_total(LOAD_ERRORS),
        "publish_failures": _counter_total(PUBLISH_FAILURES),
    }
