from prometheus_client import Counter, Histogram, Gauge

# Reconcile Metrics
DECISIONS_TOTAL = Counter(
    'volumescaler_decisions_total',
    'Number of per-volume decisions',
    ['kind']
)

TICK_DURATION = Histogram(
    'volumescaler_tick_duration_seconds',
    'Time spent in one reconcile pass',
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

TICK_FAILURES = Counter(
    'volumescaler_tick_failures_total',
    'Reconcile passes aborted before evaluating volumes',
    ['phase']
)

VOLUME_ERRORS = Counter(
    'volumescaler_volume_errors_total',
    'Per-volume processing failures',
    ['namespace']
)

# Volume Metrics
MANAGED_VOLUMES = Gauge(
    'volumescaler_managed_volumes',
    'Local volumes with a VolumeScaler in the last pass'
)

VOLUME_USAGE_PERCENT = Gauge(
    'volumescaler_volume_usage_percent',
    'Measured usage of a claim relative to its requested size',
    ['namespace', 'claim']
)

VOLUME_REQUESTED_GIB = Gauge(
    'volumescaler_volume_requested_gibibytes',
    'Requested capacity of a claim',
    ['namespace', 'claim']
)
