"""Controller metrics, exported in the Prometheus text format."""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, start_http_server

logger = logging.getLogger("postgres-controller.metrics")


@dataclass
class CycleStats:
    """Statistics for one dispatch cycle"""
    records_seen: int = 0
    reconciles_started: int = 0
    reconciles_succeeded: int = 0
    reconciles_failed: int = 0
    deferred: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }


class Metrics:
    """Controller metrics kept in a private Prometheus registry"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._cycles = Counter(
            "postgres_controller_cycles_total",
            "Total number of dispatch cycles",
            registry=self.registry,
        )
        self._last_cycle = Gauge(
            "postgres_controller_last_cycle_timestamp",
            "Timestamp of last dispatch cycle",
            registry=self.registry,
        )
        self._last_cycle_duration = Gauge(
            "postgres_controller_last_cycle_duration_seconds",
            "Duration of last dispatch cycle",
            registry=self.registry,
        )
        self._reconciles = Counter(
            "postgres_controller_reconcile_total",
            "Total reconciles per controller",
            ["controller"],
            registry=self.registry,
        )
        self._failures = Counter(
            "postgres_controller_reconcile_errors_total",
            "Failed reconciles per record",
            ["controller", "namespace", "name"],
            registry=self.registry,
        )

    def record_cycle(self, stats: CycleStats):
        self._cycles.inc()
        self._last_cycle.set_to_current_time()
        self._last_cycle_duration.set(stats.duration_seconds())

    def record_reconcile(self, controller: str):
        self._reconciles.labels(controller=controller).inc()

    def record_failure(self, controller: str, namespace: str, name: str):
        """Increment the failure counter for one record"""
        self._failures.labels(controller=controller, namespace=namespace, name=name).inc()

    @property
    def cycle_count(self) -> int:
        return int(self.registry.get_sample_value("postgres_controller_cycles_total") or 0)

    def failure_count(self, controller: str, namespace: str, name: str) -> int:
        value = self.registry.get_sample_value(
            "postgres_controller_reconcile_errors_total",
            {"controller": controller, "namespace": namespace, "name": name},
        )
        return int(value or 0)

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        return generate_latest(self.registry).decode("utf-8")


def serve_metrics(metrics: Metrics, port: int):
    """Serve the registry of metrics on /metrics from a daemon thread"""
    start_http_server(port, registry=metrics.registry)
    logger.info(f"Serving metrics on :{port}/metrics")
