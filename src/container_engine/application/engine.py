"""Container Engine - Unified entry point for the engine.

This module provides the ContainerEngine class that owns every engine
component: resource store, event bus, timers, volume and network
managers, the container state machine, restart policy, health
monitoring and the orchestrator.

Usage:
    from container_engine.application import ContainerEngine

    with ContainerEngine(config) as engine:
        engine.network_create("net-a")
        web = engine.container_create(
            ContainerConfig(image="web:1", name="web", networks=[NetworkAttachment("net-a")])
        )
        engine.container_start(web.container_id)
        engine.network_resolve("net-a", "web")

Every intent runs inside a trace span, is counted in the operations
metrics, and raises the domain errors re-exported by ``ports.inbound``.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterable, Iterator, Optional, Sequence

from container_engine.adapters.outbound import FileJournal, MockHealthProbe, MockProcessSandbox
from container_engine.domain.entities import (
    Container,
    ContainerConfig,
    ContainerState,
    Event,
    EventType,
    MountHandle,
    Network,
    NetworkDriver,
    ResourceKind,
    ServiceSpec,
    ServiceStatus,
    UpdateConfig,
    Volume,
)
from container_engine.domain.entities.service import Service
from container_engine.domain.errors import EngineError, NotFoundError
from container_engine.domain.services import (
    CancellationToken,
    ContainerManager,
    DeploymentPlan,
    EventBus,
    HealthMonitor,
    KeyedLocks,
    NetworkManager,
    Orchestrator,
    ResourceStore,
    RestartManager,
    RolloutResult,
    RolloutStatus,
    Subscription,
    TimerService,
    VolumeManager,
)
from container_engine.domain.services.event_bus import EventHandler, EventPredicate
from container_engine.infrastructure.config import Config, get_config
from container_engine.infrastructure.logging import bind_intent, clear_intent, get_logger, setup_logging
from container_engine.infrastructure.metrics import MetricsRegistry, get_metrics, setup_metrics
from container_engine.infrastructure.tracing import setup_tracing, trace_span
from container_engine.ports.outbound import (
    HealthProbePort,
    JournalPort,
    ProcessSandboxPort,
    SignalKind,
)

# Networks every engine provides: (name, driver)
DEFAULT_NETWORKS = (
    ("bridge", NetworkDriver.BRIDGE),
    ("host", NetworkDriver.HOST),
    ("none", NetworkDriver.NONE),
)

_CONTAINER_EVENTS = frozenset(
    {
        EventType.CONTAINER_CREATED,
        EventType.CONTAINER_STARTED,
        EventType.CONTAINER_PAUSED,
        EventType.CONTAINER_UNPAUSED,
        EventType.CONTAINER_EXITED,
        EventType.CONTAINER_REMOVED,
    }
)


class ContainerEngine:
    """Main container engine that owns all components.

    The ContainerEngine is the intent facade of the engine. Components
    are built by ``start()`` and torn down by ``shutdown()``; nothing is
    shared between engine instances.

    Features:
        - Container lifecycle with stop grace periods and restart policies
        - Networks with per-network name resolution
        - Reference-counted volumes
        - Service deployment with dependency ordering, health gating,
          rolling updates and scaling
        - Crash recovery from the resource store journal

    Thread Safety:
        All intents are thread-safe. Intents on one container (or one
        service) are serialized; others run concurrently.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        sandbox: Optional[ProcessSandboxPort] = None,
        probe: Optional[HealthProbePort] = None,
        metrics: Optional[MetricsRegistry] = None,
        setup_observability: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration; the environment-derived global
                configuration when None.
            sandbox: Process sandbox; an in-memory sandbox when None.
            probe: Health probe runner; an in-memory probe when None.
            metrics: Metrics registry; the global registry when None.
            setup_observability: Configure logging, tracing and the
                metrics endpoint from the configuration on start.
        """
        self._config = config or get_config()
        self._sandbox = sandbox or MockProcessSandbox()
        self._probe = probe or MockHealthProbe()
        self._metrics = metrics
        self._setup_observability = setup_observability
        self._logger = get_logger(__name__)

        # Components (initialized on start)
        self._journal: Optional[JournalPort] = None
        self._store: Optional[ResourceStore] = None
        self._bus: Optional[EventBus] = None
        self._timers: Optional[TimerService] = None
        self._locks: Optional[KeyedLocks] = None
        self._volumes: Optional[VolumeManager] = None
        self._networks: Optional[NetworkManager] = None
        self._containers: Optional[ContainerManager] = None
        self._restarts: Optional[RestartManager] = None
        self._health: Optional[HealthMonitor] = None
        self._orchestrator: Optional[Orchestrator] = None
        self._metrics_subscription: Optional[Subscription] = None

        # State
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def config(self) -> Config:
        return self._config

    @property
    def is_started(self) -> bool:
        """Check if the engine is started."""
        return self._started

    @property
    def sandbox(self) -> ProcessSandboxPort:
        return self._sandbox

    @property
    def probe(self) -> HealthProbePort:
        return self._probe

    @property
    def metrics(self) -> MetricsRegistry:
        self._require_started()
        return self._metrics

    @property
    def store(self) -> ResourceStore:
        self._require_started()
        return self._store

    @property
    def bus(self) -> EventBus:
        self._require_started()
        return self._bus

    @property
    def containers(self) -> ContainerManager:
        self._require_started()
        return self._containers

    @property
    def networks(self) -> NetworkManager:
        self._require_started()
        return self._networks

    @property
    def volumes(self) -> VolumeManager:
        self._require_started()
        return self._volumes

    @property
    def restarts(self) -> RestartManager:
        self._require_started()
        return self._restarts

    @property
    def health(self) -> HealthMonitor:
        self._require_started()
        return self._health

    @property
    def orchestrator(self) -> Orchestrator:
        self._require_started()
        return self._orchestrator

    def start(self) -> ContainerEngine:
        """Start the engine.

        Builds every component, rebuilds the resource store from the
        journal, settles containers whose process died with a previous
        engine, and restarts those whose policy asks for it.

        Raises:
            RuntimeError: If already started.
        """
        if self._started:
            raise RuntimeError("Container engine already started")

        config = self._config
        config.ensure_directories()
        if self._setup_observability:
            self._configure_observability()
        if self._metrics is None:
            self._metrics = get_metrics()

        if config.engine.journal_enabled:
            self._journal = FileJournal(config.engine.journal_path, fsync=config.engine.journal_fsync)
        self._store = ResourceStore(journal=self._journal, max_retries=config.store.max_retries)
        self._bus = EventBus(history_size=config.events.history_size)
        self._timers = TimerService()
        self._timers.start()
        self._locks = KeyedLocks()

        self._volumes = VolumeManager(self._store, self._locks, self._bus, config.engine.volumes_dir)
        self._networks = NetworkManager(
            self._store,
            self._locks,
            self._bus,
            self._sandbox,
            default_pool=config.network.default_pool,
            default_prefix=config.network.default_prefix,
        )
        self._containers = ContainerManager(
            self._store,
            self._bus,
            self._sandbox,
            self._timers,
            self._locks,
            self._networks,
            self._volumes,
            default_stop_timeout=config.engine.default_stop_timeout,
            kill_grace=config.engine.kill_grace,
        )
        self._restarts = RestartManager(
            self._containers,
            self._bus,
            self._timers,
            backoff_initial=config.restart.backoff_initial,
            backoff_max=config.restart.backoff_max,
        )
        self._health = HealthMonitor(
            self._containers,
            self._bus,
            self._timers,
            self._probe,
            workers=config.health.probe_workers,
        )
        self._orchestrator = Orchestrator(
            self._store,
            self._containers,
            self._networks,
            self._bus,
            ready_timeout=config.health.ready_timeout,
            auto_reconcile=config.orchestrator.auto_reconcile,
        )

        self._metrics_subscription = self._bus.subscribe(self._record_event, name="metrics")
        self._restarts.start()
        self._health.start()
        self._orchestrator.start()
        self._started = True

        try:
            self._recover()
            if config.network.create_default_networks:
                for name, driver in DEFAULT_NETWORKS:
                    self._networks.ensure_network(name, driver)
        except Exception:
            self.shutdown(stop_containers=False)
            raise

        self._refresh_container_counts()
        self._logger.info(
            "engine_started",
            containers=self._store.count(ResourceKind.CONTAINER),
            networks=self._store.count(ResourceKind.NETWORK),
            volumes=self._store.count(ResourceKind.VOLUME),
            services=self._store.count(ResourceKind.SERVICE),
            journal=str(config.engine.journal_path) if self._journal else None,
        )
        return self

    def shutdown(self, timeout: Optional[float] = None, stop_containers: bool = True) -> None:
        """Shut the engine down.

        Restart policies and health checks are switched off before the
        containers are stopped, so nothing comes back during shutdown.

        Args:
            timeout: Grace period for each container stop.
            stop_containers: Leave processes and their records running,
                as a crashed engine would.
        """
        if not self._started:
            return
        self._started = False

        self._orchestrator.close()
        self._restarts.close()
        self._health.close()
        self._containers.shutdown(timeout, stop_containers=stop_containers)
        self._timers.stop()
        if self._metrics_subscription is not None:
            self._metrics_subscription.close()
        self._bus.close()
        if self._journal is not None:
            self._journal.close()
        self._logger.info("engine_stopped", stopped_containers=stop_containers)

    def __enter__(self) -> ContainerEngine:
        if not self._started:
            self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    # =========================================================================
    # Container intents
    # =========================================================================

    def container_create(self, config: ContainerConfig) -> Container:
        """Create a container in state created."""
        with self._intent("container_create", image=config.image, name=config.name):
            return self._containers.create(config)

    def container_start(self, ref: str) -> Container:
        """Start a created or stopped container."""
        with self._intent("container_start", container=ref):
            return self._containers.start(ref)

    def container_stop(self, ref: str, timeout: Optional[float] = None) -> Container:
        """Stop a container, killing it after ``timeout`` seconds."""
        with self._intent("container_stop", container=ref, timeout=timeout):
            started = time.perf_counter()
            container = self._containers.stop(ref, timeout)
            self._metrics.container_stop_seconds.observe(time.perf_counter() - started)
            return container

    def container_kill(self, ref: str, signal: SignalKind | str | int = SignalKind.KILL) -> Container:
        """Send a signal to the container's root process."""
        with self._intent("container_kill", container=ref, signal=str(signal)):
            return self._containers.kill(ref, signal)

    def container_pause(self, ref: str) -> Container:
        """Freeze a running container."""
        with self._intent("container_pause", container=ref):
            return self._containers.pause(ref)

    def container_unpause(self, ref: str) -> Container:
        """Thaw a paused container."""
        with self._intent("container_unpause", container=ref):
            return self._containers.unpause(ref)

    def container_restart(self, ref: str, timeout: Optional[float] = None) -> Container:
        """Stop (if running) and start a container."""
        with self._intent("container_restart", container=ref, timeout=timeout):
            return self._containers.restart(ref, timeout)

    def container_remove(self, ref: str, force: bool = False, volumes: bool = False) -> None:
        """Remove a container, releasing its networks and volumes."""
        with self._intent("container_remove", container=ref, force=force, volumes=volumes):
            self._containers.remove(ref, force=force, volumes=volumes)

    def container_inspect(self, ref: str) -> Container:
        """Get a container by ID, name or ID prefix."""
        with self._intent("container_inspect", container=ref):
            return self._containers.find(ref)

    def container_list(self, all: bool = False) -> list[Container]:
        """List running and paused containers, or every container with ``all``."""
        with self._intent("container_list", all=all):
            if all:
                return self._containers.list()
            return self._containers.list(lambda c: c.is_running())

    def container_wait(self, ref: str, timeout: Optional[float] = None) -> int:
        """Wait for the container's process to exit and return its code."""
        with self._intent("container_wait", container=ref, timeout=timeout):
            return self._containers.wait(ref, timeout)

    # =========================================================================
    # Network intents
    # =========================================================================

    def network_create(
        self,
        name: str,
        driver: NetworkDriver | str = NetworkDriver.BRIDGE,
        subnet: Optional[str] = None,
        gateway: Optional[str] = None,
        internal: bool = False,
        labels: Optional[dict[str, str]] = None,
    ) -> Network:
        """Create a network."""
        with self._intent("network_create", network=name, driver=NetworkDriver(driver).value, subnet=subnet):
            return self._networks.create_network(name, driver, subnet, gateway, internal, labels)

    def network_attach(
        self,
        network_ref: str,
        container_ref: str,
        aliases: Iterable[str] = (),
        address: Optional[str] = None,
    ) -> Optional[str]:
        """Attach a container and return its address on the network."""
        with self._intent("network_attach", network=network_ref, container=container_ref):
            container_id = self._store.resolve_id(ResourceKind.CONTAINER, container_ref)
            return self._networks.attach(network_ref, container_id, aliases, address)

    def network_detach(self, network_ref: str, container_ref: str) -> None:
        """Detach a container, freeing its address."""
        with self._intent("network_detach", network=network_ref, container=container_ref):
            container_id = self._store.resolve_id(ResourceKind.CONTAINER, container_ref)
            self._networks.detach(network_ref, container_id)

    def network_resolve(self, network_ref: str, name: str, requester: Optional[str] = None) -> str:
        """Resolve a name among the members of one network."""
        with self._intent("network_resolve", network=network_ref, name=name, requester=requester):
            return self._networks.resolve(network_ref, name, requester)

    def network_resolve_all(
        self, network_ref: str, name: str, requester: Optional[str] = None
    ) -> list[str]:
        """Resolve a name to every matching member address."""
        with self._intent("network_resolve_all", network=network_ref, name=name, requester=requester):
            return self._networks.resolve_all(network_ref, name, requester)

    def network_reachable(self, first_ref: str, second_ref: str) -> bool:
        """Check whether two containers share a network."""
        with self._intent("network_reachable", first=first_ref, second=second_ref):
            return self._networks.reachable(first_ref, second_ref)

    def network_request_default_route(self, ref: str) -> Network:
        """Route a network to the external uplink."""
        with self._intent("network_request_default_route", network=ref):
            return self._networks.request_default_route(ref)

    def network_remove(self, ref: str) -> None:
        """Remove a network with no members."""
        with self._intent("network_remove", network=ref):
            self._networks.remove_network(ref)

    def network_inspect(self, ref: str) -> Network:
        with self._intent("network_inspect", network=ref):
            return self._networks.get_network(ref)

    def network_list(self) -> list[Network]:
        """List networks."""
        with self._intent("network_list"):
            return self._networks.list_networks()

    # =========================================================================
    # Volume intents
    # =========================================================================

    def volume_create(
        self,
        name: Optional[str] = None,
        driver: str = "local",
        labels: Optional[dict[str, str]] = None,
    ) -> Volume:
        """Create a named or anonymous volume."""
        with self._intent("volume_create", volume=name, driver=driver):
            return self._volumes.create_volume(name, driver, labels)

    def volume_bind(
        self,
        volume_ref: str,
        container_ref: str,
        path: str,
        read_only: bool = False,
    ) -> MountHandle:
        """Mount a volume into a container."""
        with self._intent("volume_bind", volume=volume_ref, container=container_ref, path=path):
            container_id = self._store.resolve_id(ResourceKind.CONTAINER, container_ref)
            return self._volumes.bind(volume_ref, container_id, path, read_only)

    def volume_remove(self, ref: str, force: bool = False) -> None:
        """Remove a volume and its data."""
        with self._intent("volume_remove", volume=ref, force=force):
            self._volumes.remove_volume(ref, force=force)

    def volume_inspect(self, ref: str) -> Volume:
        with self._intent("volume_inspect", volume=ref):
            return self._volumes.get_volume(ref)

    def volume_list(self) -> list[Volume]:
        """List volumes."""
        with self._intent("volume_list"):
            return self._volumes.list_volumes()

    def volume_prune(self, all: bool = False) -> list[str]:
        """Remove unreferenced volumes and return their names."""
        with self._intent("volume_prune", all=all):
            return self._volumes.prune(all=all)

    # =========================================================================
    # Service intents
    # =========================================================================

    def service_plan(self, specs: Sequence[ServiceSpec]) -> list[str]:
        """Compute the deployment order without deploying."""
        with self._intent("service_plan", services=len(specs)):
            return self._orchestrator.plan([self._with_defaults(s) for s in specs])

    def service_apply(
        self,
        specs: Sequence[ServiceSpec],
        cancel: Optional[CancellationToken] = None,
    ) -> DeploymentPlan:
        """Deploy services in dependency order."""
        with self._intent("service_apply", services=len(specs)):
            plan = self._orchestrator.apply([self._with_defaults(s) for s in specs], cancel)
            self._logger.info(
                "services_applied",
                order=plan.order,
                actions=plan.actions,
                skipped=plan.skipped,
                cancelled=plan.cancelled,
            )
            return plan

    def service_scale(
        self,
        name: str,
        replicas: int,
        cancel: Optional[CancellationToken] = None,
        wait: bool = False,
    ) -> ServiceStatus:
        """Change the replica count of a service."""
        with self._intent("service_scale", service=name, replicas=replicas):
            return self._orchestrator.scale(name, replicas, cancel, wait)

    def service_update(
        self,
        spec: ServiceSpec,
        cancel: Optional[CancellationToken] = None,
    ) -> RolloutResult:
        """Roll a service to a new descriptor."""
        with self._intent("service_update", service=spec.name, image=spec.image):
            result = self._orchestrator.update(self._with_defaults(spec), cancel)
            if result.status == RolloutStatus.ABORTED:
                self._logger.warning(
                    "rollout_aborted",
                    service=spec.name,
                    revision=result.revision,
                    error=str(result.error),
                )
            return result

    def service_reconcile(self, name: str) -> ServiceStatus:
        """Replace dead replicas and converge to the replica count."""
        with self._intent("service_reconcile", service=name):
            return self._orchestrator.reconcile(name)

    def service_remove(self, name: str, timeout: Optional[float] = None) -> None:
        """Retire every replica and delete the service."""
        with self._intent("service_remove", service=name):
            self._orchestrator.remove_service(name, timeout)

    def service_status(self, name: str) -> ServiceStatus:
        """Get a point-in-time view of a service."""
        with self._intent("service_status", service=name):
            return self._orchestrator.status(name)

    def service_inspect(self, name: str) -> Service:
        with self._intent("service_inspect", service=name):
            return self._orchestrator.get_service(name)

    def service_list(self) -> list[Service]:
        with self._intent("service_list"):
            return self._orchestrator.list_services()

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(
        self,
        handler: Optional[EventHandler] = None,
        types: Optional[Iterable[EventType]] = None,
        predicate: Optional[EventPredicate] = None,
    ) -> Subscription:
        """Subscribe to engine events (see ``EventBus.subscribe``)."""
        self._require_started()
        return self._bus.subscribe(handler, types=types, predicate=predicate)

    def events(self, types: Optional[Iterable[EventType]] = None) -> list[Event]:
        """Recent events, oldest first."""
        self._require_started()
        return self._bus.history(types)

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _intent(self, intent: str, **attributes: Any) -> Iterator[None]:
        self._require_started()
        started = time.perf_counter()
        bind_intent(intent)
        with trace_span(f"engine.{intent}", attributes):
            try:
                yield
            except (EngineError, ValueError, TimeoutError) as e:
                self._metrics.operations_total.labels(intent=intent, status="error").inc()
                self._logger.info(
                    "intent_failed",
                    intent=intent,
                    error=str(e),
                    error_type=type(e).__name__,
                    **{k: v for k, v in attributes.items() if v is not None},
                )
                raise
            except Exception:
                self._metrics.operations_total.labels(intent=intent, status="error").inc()
                self._logger.exception("intent_crashed", intent=intent)
                raise
            finally:
                clear_intent()
                self._metrics.operation_duration_seconds.labels(intent=intent).observe(
                    time.perf_counter() - started
                )
        self._metrics.operations_total.labels(intent=intent, status="success").inc()

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("Container engine not started")

    def _with_defaults(self, spec: ServiceSpec) -> ServiceSpec:
        if spec.update_config is not None:
            return spec
        defaults = self._config.orchestrator
        return replace(
            spec,
            update_config=UpdateConfig(
                parallelism=defaults.default_parallelism,
                delay=defaults.default_delay,
            ),
        )

    def _recover(self) -> None:
        if self._journal is not None:
            applied = self._store.load(self._journal.replay())
            self._journal.compact(self._store.export())
            if applied:
                self._logger.info("journal_replayed", entries=applied)

        for container_id in self._containers.recover():
            container = self._containers.get(container_id)
            try:
                self._containers.restart_after_exit(container_id, container.run_id)
            except EngineError as e:
                self._logger.error(
                    "recovery_restart_failed", container=container.display_name, error=str(e)
                )

    def _configure_observability(self) -> None:
        observability = self._config.observability
        setup_logging(observability.log_level, observability.log_format)
        if observability.otel_endpoint:
            setup_tracing(observability.otel_service_name, observability.otel_endpoint)
        if self._metrics is None and self._config.server.metrics_enabled:
            self._metrics = setup_metrics(self._config.server.metrics_port)

    def _record_event(self, event: Event) -> None:
        metrics = self._metrics
        metrics.events_total.labels(type=event.type.value).inc()

        if event.type in _CONTAINER_EVENTS:
            self._refresh_container_counts()
        elif event.type == EventType.CONTAINER_RESTARTING:
            metrics.container_restarts_total.inc()
        elif event.type == EventType.RESTART_DECLINED:
            metrics.restarts_declined_total.labels(reason=event.get("reason", "unknown")).inc()
        elif event.type == EventType.CONTAINER_HEALTH:
            metrics.health_transitions_total.labels(status=event.get("status")).inc()
        elif event.type == EventType.SANDBOX_FAILURE:
            metrics.sandbox_failures_total.inc()
        elif event.type == EventType.ROLLOUT_BATCH:
            metrics.rollout_batches_total.inc()
        elif event.type == EventType.ROLLOUT_COMPLETED:
            metrics.rollouts_total.labels(outcome="completed").inc()
        elif event.type == EventType.ROLLOUT_ABORTED:
            outcome = "cancelled" if event.get("reason") == "cancelled" else "aborted"
            metrics.rollouts_total.labels(outcome=outcome).inc()
        elif event.type in (EventType.SERVICE_CREATED, EventType.SERVICE_SCALED):
            metrics.service_replicas.labels(service=event.get("name")).set(event.get("replicas", 0))
        elif event.type == EventType.SERVICE_REMOVED:
            self._drop_series(metrics.service_replicas, event.get("name"))
        elif event.type in (EventType.NETWORK_CONNECTED, EventType.NETWORK_DISCONNECTED):
            try:
                network = self._store.get(ResourceKind.NETWORK, event.subject_id)
            except NotFoundError:
                return
            metrics.network_attachments.labels(network=network.name).set(len(network.members))
        elif event.type == EventType.NETWORK_REMOVED:
            self._drop_series(metrics.network_attachments, event.get("name"))
        elif event.type in (EventType.VOLUME_MOUNTED, EventType.VOLUME_UNMOUNTED):
            metrics.volume_references.labels(volume=event.get("name")).set(event.get("ref_count", 0))
        elif event.type == EventType.VOLUME_REMOVED:
            self._drop_series(metrics.volume_references, event.get("name"))

    def _refresh_container_counts(self) -> None:
        counts = {state: 0 for state in ContainerState if state != ContainerState.REMOVED}
        for container in self._store.list(ResourceKind.CONTAINER):
            counts[container.state] = counts.get(container.state, 0) + 1
        for state, count in counts.items():
            self._metrics.container_count.labels(state=state.value).set(count)

    @staticmethod
    def _drop_series(gauge, label: Optional[str]) -> None:
        try:
            gauge.remove(label)
        except KeyError:
            pass
