"""
Prometheus collectors shared by the services and the /metrics blueprint.
"""
import os

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, REGISTRY
from prometheus_client import multiprocess

# Check if running in multi-process mode (Gunicorn)
MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

# Use multiprocess registry in production with Gunicorn
if MULTIPROCESS_MODE:
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY

_collector_registry = registry if not MULTIPROCESS_MODE else None

# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'http_status'],
    registry=_collector_registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'endpoint'],
    registry=_collector_registry,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

http_requests_in_flight = Gauge(
    'http_requests_in_flight',
    'Number of HTTP requests currently being processed',
    registry=_collector_registry
)

# Checkout pipeline
checkout_attempts_total = Counter(
    'checkout_attempts_total',
    'Checkout attempts by outcome',
    ['outcome'],
    registry=_collector_registry
)

stock_reservation_conflicts_total = Counter(
    'stock_reservation_conflicts_total',
    'Reservation attempts refused for insufficient stock',
    registry=_collector_registry
)

checkout_duration_seconds = Histogram(
    'checkout_duration_seconds',
    'Wall time of a checkout attempt',
    registry=_collector_registry,
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

reservations_swept_total = Counter(
    'reservations_swept_total',
    'Orphaned stock reservations released by the recovery sweep',
    registry=_collector_registry
)
