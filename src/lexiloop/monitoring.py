"""Monitoring configuration for the learning engine."""
from prometheus_client import Counter, Gauge, Histogram, start_http_server

# Session metrics
active_sessions = Gauge(
    "lexiloop_active_sessions",
    "Number of practice sessions currently running",
)

session_duration = Histogram(
    "lexiloop_session_duration_seconds",
    "Duration of practice sessions in seconds",
    buckets=[60, 300, 600, 1800, 3600],  # 1min, 5min, 10min, 30min, 1hour
)

cycles_presented = Counter(
    "lexiloop_cycles_presented_total",
    "Total number of cycles exposed to playback",
    ["cycle_type"],
)

# Audio readiness metrics
audio_missing = Counter(
    "lexiloop_audio_missing_total",
    "Total number of audio ids found missing at validation time",
)

audio_fetch_failures = Counter(
    "lexiloop_audio_fetch_failures_total",
    "Total number of audio fetches that failed or could not be resolved",
)

invalid_units = Counter(
    "lexiloop_invalid_units_total",
    "Total number of units skipped because their course content was malformed",
)

# Learning metrics
spikes_detected = Counter(
    "lexiloop_spikes_total",
    "Total number of latency spikes detected",
    ["response"],
)

units_retired = Counter(
    "lexiloop_units_retired_total",
    "Total number of vocabulary units retired",
)

response_latency = Histogram(
    "lexiloop_response_latency_ms",
    "Raw learner response latency in milliseconds",
    buckets=[250, 500, 1000, 2000, 4000, 8000],
)

# Error metrics
scheduler_invariant_violations = Counter(
    "lexiloop_scheduler_invariant_violations_total",
    "Total number of scheduler state corruptions surfaced",
)

persistence_errors = Counter(
    "lexiloop_persistence_errors_total",
    "Total number of persistence writes dropped after retries",
    ["entity"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
