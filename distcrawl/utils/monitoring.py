"""
Prometheus export of crawl statistics.
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Gauge, generate_latest, start_http_server

from ..crawler.stats import StatsSnapshot


class MetricsExporter:
    """
    Mirrors every stats snapshot into Prometheus gauges.

    Register ``update`` as a listener on the stats aggregator.
    """

    def __init__(self, prometheus_port: int = 8000,
                 registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.prometheus_port = prometheus_port
        self.registry = registry or CollectorRegistry()
        self.server_started = False

        self.gauges: Dict[str, Gauge] = {
            'pages_crawled': Gauge(
                'crawler_pages_crawled',
                'Pages crawled successfully',
                registry=self.registry
            ),
            'pages_failed': Gauge(
                'crawler_pages_failed',
                'Pages whose fetch or parse failed',
                registry=self.registry
            ),
            'links_found': Gauge(
                'crawler_links_found',
                'Links discovered and enqueued',
                registry=self.registry
            ),
            'queue_size': Gauge(
                'crawler_queue_size',
                'Frontier size derived from progress events',
                registry=self.registry
            ),
            'active_workers': Gauge(
                'crawler_active_workers',
                'Tasks currently in flight',
                registry=self.registry
            ),
            'dropped_events': Gauge(
                'crawler_dropped_events',
                'Progress events dropped on a full stats channel',
                registry=self.registry
            ),
        }

    def start_server(self):
        """Start the Prometheus metrics HTTP server."""
        if self.server_started:
            return
        start_http_server(self.prometheus_port, registry=self.registry)
        self.server_started = True
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def update(self, snapshot: StatsSnapshot):
        """Set every gauge from ``snapshot``."""
        values = snapshot.to_dict()
        for name, gauge in self.gauges.items():
            gauge.set(values[name])

    def render(self) -> bytes:
        """Current metrics in the Prometheus text format."""
        return generate_latest(self.registry)
