from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

FEED_CYCLES = Counter(
    "metrocast_feed_cycles_total",
    "Feed poll cycles run by the background jobs.",
    labelnames=("job", "result"),
)
FEED_CYCLE_LATENCY = Histogram(
    "metrocast_feed_cycle_seconds",
    "Duration of feed poll cycles.",
    labelnames=("job",),
)
FEED_RECORDS_SKIPPED = Counter(
    "metrocast_feed_records_skipped_total",
    "Feed records dropped because they were malformed or unresolvable.",
    labelnames=("feed", "reason"),
)
STORE_WRITE_BATCH_SIZE = Histogram(
    "metrocast_store_write_batch_size",
    "Number of records written per store batch.",
    labelnames=("kind",),
    buckets=(1, 10, 100, 1_000, 10_000, 100_000, 1_000_000),
)
CONDITIONAL_RESPONSES = Counter(
    "metrocast_conditional_responses_total",
    "Conditional read outcomes served by the API.",
    labelnames=("endpoint", "outcome"),
)
FEED_SNAPSHOT_AGE = Gauge(
    "metrocast_feed_snapshot_age_seconds",
    "Seconds since the stored snapshot of a feed was last replaced.",
    labelnames=("feed",),
)


def observe_feed_cycle(job: str, result: str, duration_seconds: float) -> None:
    """Record a feed cycle result and its latency."""
    FEED_CYCLES.labels(job=job, result=result).inc()
    FEED_CYCLE_LATENCY.labels(job=job).observe(duration_seconds)


def record_skipped_record(feed: str, reason: str) -> None:
    """Increment the skipped-record counter for a feed."""
    FEED_RECORDS_SKIPPED.labels(feed=feed, reason=reason).inc()


def observe_store_batch(kind: str, size: int) -> None:
    """Record how many records a store batch wrote."""
    STORE_WRITE_BATCH_SIZE.labels(kind=kind).observe(size)


def record_conditional_response(endpoint: str, outcome: str) -> None:
    """Increment the conditional-response counter."""
    CONDITIONAL_RESPONSES.labels(endpoint=endpoint, outcome=outcome).inc()


def set_snapshot_age(feed: str, age_seconds: float) -> None:
    """Publish how old the stored snapshot of a feed is."""
    FEED_SNAPSHOT_AGE.labels(feed=feed).set(age_seconds)
