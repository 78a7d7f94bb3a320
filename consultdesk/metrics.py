"""Prometheus instruments for the orchestration core."""
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

research_calls_counter = Counter(
    'consultdesk_research_calls_total', 'Research collaborator calls', ['route', 'outcome']
)
dedup_suppressed_counter = Counter(
    'consultdesk_dedup_suppressed_total', 'Triggers suppressed by the deduplicator'
)
widget_transitions_counter = Counter(
    'consultdesk_widget_transitions_total', 'Widget state transitions', ['widget_type', 'state']
)
analyses_counter = Counter(
    'consultdesk_analyses_total', 'Frame analyses by trigger and outcome', ['widget_type', 'trigger', 'outcome']
)
analysis_latency_histogram = Histogram(
    'consultdesk_analysis_latency_seconds', 'Latency of frame analysis calls (seconds)', ['widget_type', 'trigger'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
artifact_chunks_counter = Counter(
    'consultdesk_artifact_chunks_total', 'Artifact chunks by kind and outcome', ['kind', 'outcome']
)


def render_latest():
    """Return (body, content_type) for the /metrics endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST
