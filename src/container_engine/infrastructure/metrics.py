"""Prometheus metrics for the container engine."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all container engine metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Container metrics
        self.container_count = Gauge(
            "engine_container_count",
            "Number of containers by state",
            ["state"],  # created, running, paused, stopped
            registry=self._registry,
        )

        self.container_stop_seconds = Histogram(
            "engine_container_stop_seconds",
            "Time from stop request to process exit",
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.container_restarts_total = Counter(
            "engine_container_restarts_total",
            "Restarts performed by restart policies",
            registry=self._registry,
        )

        self.restarts_declined_total = Counter(
            "engine_restarts_declined_total",
            "Exits not followed by a restart",
            ["reason"],  # policy, explicit_stop, clean_exit, max_retries, sandbox_failure
            registry=self._registry,
        )

        self.health_transitions_total = Counter(
            "engine_health_transitions_total",
            "Health status transitions",
            ["status"],  # healthy, unhealthy
            registry=self._registry,
        )

        self.sandbox_failures_total = Counter(
            "engine_sandbox_failures_total",
            "Process sandbox failures",
            registry=self._registry,
        )

        # Intent metrics
        self.operations_total = Counter(
            "engine_operations_total",
            "Total engine intents",
            ["intent", "status"],  # container_start/service_scale/..., success/error
            registry=self._registry,
        )

        self.operation_duration_seconds = Histogram(
            "engine_operation_duration_seconds",
            "Engine intent latency in seconds",
            ["intent"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 60.0),
            registry=self._registry,
        )

        # Orchestrator metrics
        self.rollout_batches_total = Counter(
            "engine_rollout_batches_total",
            "Rolling update batches started",
            registry=self._registry,
        )

        self.rollouts_total = Counter(
            "engine_rollouts_total",
            "Finished rolling updates",
            ["outcome"],  # completed, aborted, cancelled
            registry=self._registry,
        )

        self.service_replicas = Gauge(
            "engine_service_replicas",
            "Desired replicas per service",
            ["service"],
            registry=self._registry,
        )

        # Network and volume metrics
        self.network_attachments = Gauge(
            "engine_network_attachments",
            "Attached containers per network",
            ["network"],
            registry=self._registry,
        )

        self.volume_references = Gauge(
            "engine_volume_references",
            "Live mounts per volume",
            ["volume"],
            registry=self._registry,
        )

        # Event bus
        self.events_total = Counter(
            "engine_events_total",
            "Events published on the event bus",
            ["type"],
            registry=self._registry,
        )

        # Engine info
        self.info = Info(
            "container_engine",
            "Container engine information",
            registry=self._registry,
        )


_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8003, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """Set up Prometheus metrics server."""
    global _metrics
    _metrics = MetricsRegistry(registry)

    from container_engine import __version__
    _metrics.info.info({"version": __version__})

    start_http_server(port, registry=registry or REGISTRY)
    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
