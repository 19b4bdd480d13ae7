"""Prometheus metrics for the collector."""

import logging

from prometheus_client import Counter, Gauge, start_http_server

from .config.settings import MetricsConfig


logger = logging.getLogger(__name__)


EVENTS_TOTAL = Counter(
    'hass_collector_events_total',
    'Events handled by the dispatch workers',
    ['outcome']
)

POINTS_WRITTEN = Counter(
    'hass_collector_points_written_total',
    'Points accepted by the time-series sink'
)

SINK_ERRORS = Counter(
    'hass_collector_sink_errors_total',
    'Point writes rejected by the time-series sink'
)

METADATA_REFRESHES = Counter(
    'hass_collector_metadata_refresh_total',
    'Metadata registry refresh attempts',
    ['result']
)

QUEUE_DEPTH = Gauge(
    'hass_collector_queue_depth',
    'Messages waiting in the dispatch queue'
)


def start_metrics_server(config: MetricsConfig) -> bool:
    """Expose the default registry over HTTP if enabled; returns whether it started."""
    if not config.enable_prometheus:
        return False

    try:
        start_http_server(config.prometheus_port)
    except OSError as e:
        logger.error(f"Failed to start Prometheus server: {e}")
        return False

    logger.info(f"Prometheus metrics server started on port {config.prometheus_port}")
    return True
