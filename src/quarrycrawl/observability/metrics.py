"""
Defines and manages Prometheus metrics for the crawler.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from quarrycrawl.config.config import MonitoringConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing this module twice (test reloads, multiple engines in one process)
# must not raise "Duplicated timeseries" from the default registry.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing

        try:
            return metric_cls(name, documentation, *args, **kwargs)
        except ValueError:
            # Registration lost the race, use the collector that won
            return _PROM_REGISTRY._names_to_collectors[name]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)
Gauge = _duplicate_safe_factory(_OrigGauge)
Histogram = _duplicate_safe_factory(_OrigHistogram)


def _create_metrics() -> Dict[str, Any]:
    return {
        "crawler_fetch_latency_seconds": Histogram(
            "quarrycrawl_fetch_latency_seconds",
            "Latency of logical fetches including retries",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        ),
        "crawler_responses_total": Counter(
            "quarrycrawl_responses_total", "Total number of HTTP responses by status class", ["status_class"]
        ),
        "crawler_in_flight_requests": Gauge(
            "quarrycrawl_in_flight_requests",
            "Number of fetches currently in progress",
        ),
        "crawler_retries_total": Counter(
            "quarrycrawl_retries_total",
            "Retry attempts by reason",
            ["reason"],
        ),
        "crawler_robots_blocked_total": Counter(
            "quarrycrawl_robots_blocked_total",
            "URLs skipped because robots.txt disallowed them",
        ),
        "crawler_pages_total": Counter(
            "quarrycrawl_pages_total",
            "Results emitted by traversal strategy",
            ["strategy"],
        ),
        "crawler_frontier_size": Gauge(
            "quarrycrawl_frontier_size",
            "Entries waiting in the frontier",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Starts the Prometheus exporter when a port is configured."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> None:
        if self._started or self.config.prometheus_port is None:
            return
        start_http_server(self.config.prometheus_port)
        self._started = True
        logger.info("Prometheus exporter listening on port %s", self.config.prometheus_port)

    @property
    def is_running(self) -> bool:
        return self._started
