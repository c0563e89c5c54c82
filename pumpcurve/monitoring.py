import time
import socket
import threading
import logging

import psutil
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn

from pumpcurve.config import MonitoringConfig
from pumpcurve.events import CurveCompleted, EventLog, TokenBought, TokenCreated, TokenSold

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Serves the metrics endpoint off the main thread."""
    allow_reuse_address = True


class CurveMonitor:
    """
    Prometheus metrics for the curve controller.

    Fed two ways: record_operation() from the controller for every call
    (accepted or rejected), and on_event() as an EventLog subscriber for
    committed state changes.
    """

    def __init__(self, host="127.0.0.1", port=9090):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Isolated registry so several controllers can live in one process
        self.registry = CollectorRegistry()

        self.operations = Counter('curve_operations_total', 'Curve operations by kind and outcome',
                                  ['kind', 'status'], registry=self.registry)
        self.operation_latency = Histogram('curve_operation_latency_seconds', 'Time to run a curve operation',
                                           ['kind'], registry=self.registry)
        self.curves_created = Counter('curve_created_total', 'Bonding curves created', registry=self.registry)
        self.curves_completed = Counter('curve_completed_total', 'Bonding curves graduated', registry=self.registry)
        self.base_volume = Counter('curve_base_volume_total', 'Base currency traded through curves',
                                   ['side'], registry=self.registry)
        self.protocol_fees = Counter('curve_protocol_fees_total', 'Protocol fees charged on buys',
                                     registry=self.registry)
        self.base_reserve = Gauge('curve_virtual_base_reserve', 'Virtual base reserve per curve',
                                  ['mint'], registry=self.registry)
        self.asset_reserve = Gauge('curve_virtual_asset_reserve', 'Virtual asset reserve per curve',
                                   ['mint'], registry=self.registry)
        self.amm_k = Gauge('curve_invariant_k', 'Constant product k per curve', ['mint'], registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)

    @classmethod
    def from_config(cls, monitoring: MonitoringConfig):
        """Monitor for the configured endpoint, serving already when enabled; None when disabled."""
        if not monitoring.enabled:
            return None
        monitor = cls(host=monitoring.host, port=monitoring.port)
        monitor.start_server()
        return monitor

    def attach(self, events: EventLog):
        events.subscribe(self.on_event)

    def detach(self, events: EventLog):
        events.unsubscribe(self.on_event)

    def start_server(self):
        """Start the Prometheus HTTP endpoint, retrying while the port is busy."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s "
                                       f"(attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {self.port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def record_operation(self, kind: str, status: str, latency: float):
        self.operations.labels(kind=kind, status=status).inc()
        self.operation_latency.labels(kind=kind).observe(latency)

    def _set_reserves(self, mint: bytes, base_reserve: int, asset_reserve: int):
        label = mint.hex()
        self.base_reserve.labels(mint=label).set(base_reserve)
        self.asset_reserve.labels(mint=label).set(asset_reserve)
        self.amm_k.labels(mint=label).set(base_reserve * asset_reserve)

    def on_event(self, event):
        if isinstance(event, TokenCreated):
            self.curves_created.inc()
        elif isinstance(event, TokenBought):
            self.base_volume.labels(side='buy').inc(event.base_in)
            self.protocol_fees.inc(event.protocol_fee)
            self._set_reserves(event.mint, event.virtual_base_reserve, event.virtual_asset_reserve)
        elif isinstance(event, TokenSold):
            self.base_volume.labels(side='sell').inc(event.base_out)
            self._set_reserves(event.mint, event.virtual_base_reserve, event.virtual_asset_reserve)
        elif isinstance(event, CurveCompleted):
            self.curves_completed.inc()
            self._set_reserves(event.mint, event.virtual_base_reserve, event.virtual_asset_reserve)

    def update(self, curves=()):
        """Refresh process gauges, and reserve gauges for the given stored curves."""
        for curve in curves:
            self._set_reserves(curve.mint, curve.virtual_base_reserve, curve.virtual_asset_reserve)
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)
