"""Service orchestrator.

Turns service descriptors into running replica containers:

1. Order services by their dependencies (fail fast on cycles)
2. Wait for each service's dependencies to become ready
3. Create, roll out, scale or keep each service
4. Gate on readiness (running, and healthy when a health check is set)

Rolling updates start a batch of new-revision replicas before retiring
the same number of old ones, so at most ``parallelism`` replicas are
ever missing from the ready set while the batch is being verified.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional, Sequence

from container_engine.domain.entities import (
    REVISION_LABEL,
    SERVICE_LABEL,
    Container,
    ContainerConfig,
    ContainerState,
    Event,
    EventType,
    HealthStatus,
    NetworkAttachment,
    ResourceKind,
    Service,
    ServiceSpec,
    ServiceState,
    ServiceStatus,
)
from container_engine.domain.errors import (
    ConflictError,
    CyclicDependencyError,
    EngineError,
    HealthCheckTimeoutError,
    InvalidStateError,
    NotFoundError,
    SandboxFailureError,
)
from container_engine.domain.services.container_manager import ContainerManager
from container_engine.domain.services.event_bus import EventBus, Subscription
from container_engine.domain.services.locks import KeyedLocks
from container_engine.domain.services.network_manager import NetworkManager
from container_engine.domain.services.resource_store import ResourceStore
from container_engine.domain.value_objects import create_service_id

logger = logging.getLogger(__name__)

# Events that can change whether a replica is ready
READINESS_EVENTS = (
    EventType.CONTAINER_STARTED,
    EventType.CONTAINER_EXITED,
    EventType.CONTAINER_HEALTH,
    EventType.CONTAINER_PAUSED,
    EventType.CONTAINER_UNPAUSED,
    EventType.CONTAINER_REMOVED,
)


class CancellationToken:
    """Cooperative cancellation for long-running orchestration calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep until cancelled or the timeout elapses.

        Returns:
            True if cancelled.
        """
        return self._event.wait(timeout)


class RolloutStatus(Enum):
    """Outcome of a rolling update."""
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass
class RolloutResult:
    """Result of a rolling update."""
    service: str
    revision: int
    status: RolloutStatus
    batches: int = 0
    replaced: int = 0
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.status == RolloutStatus.COMPLETED


@dataclass
class DeploymentPlan:
    """What ``apply`` did, service by service."""
    order: list[str]
    actions: dict[str, str] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rollouts: dict[str, RolloutResult] = field(default_factory=dict)
    cancelled: bool = False


class Orchestrator:
    """Deploys and maintains services.

    Thread Safety:
        Operations on one service are serialized by a per-service lock.
        Operations on different services run concurrently.
    """

    def __init__(
        self,
        store: ResourceStore,
        containers: ContainerManager,
        networks: NetworkManager,
        bus: EventBus,
        ready_timeout: float = 60.0,
        auto_reconcile: bool = False,
    ) -> None:
        """Initialize orchestrator.

        Args:
            store: Resource store.
            containers: Container manager.
            networks: Network manager.
            bus: Event bus.
            ready_timeout: Seconds replicas without a health check get to
                start running.
            auto_reconcile: Replace replicas whose restart was declined.
        """
        self._store = store
        self._containers = containers
        self._networks = networks
        self._bus = bus
        self._ready_timeout = ready_timeout
        self._auto_reconcile = auto_reconcile
        self._locks = KeyedLocks()
        self._declined: set[str] = set()
        self._declined_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="reconcile")
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        """Begin tracking declined restarts."""
        if self._subscription is None:
            self._subscription = self._bus.subscribe(
                self._on_restart_declined,
                types=[EventType.RESTART_DECLINED],
                name="orchestrator",
            )

    def close(self) -> None:
        """Stop background reconciliation."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._executor.shutdown(wait=True)

    # =========================================================================
    # Planning
    # =========================================================================

    def plan(self, specs: Sequence[ServiceSpec]) -> list[str]:
        """Compute the deployment order.

        Independent services keep their input order.

        Args:
            specs: Service descriptors.

        Returns:
            Service names, dependencies first.

        Raises:
            ValueError: If a descriptor is invalid or names repeat.
            CyclicDependencyError: If the dependency graph has a cycle.
            NotFoundError: If a dependency is neither given nor deployed.
        """
        by_name: dict[str, ServiceSpec] = {}
        for spec in specs:
            errors = spec.validation_errors()
            if errors:
                raise ValueError(f"Invalid service {spec.name!r}: {'; '.join(errors)}")
            if spec.name in by_name:
                raise ValueError(f"Service {spec.name} is listed twice")
            by_name[spec.name] = spec

        for spec in specs:
            for dependency in spec.depends_on:
                if dependency not in by_name and not self._service_exists(dependency):
                    raise NotFoundError("service", dependency)

        self._check_cycles(specs, by_name)

        order: list[str] = []
        placed: set[str] = set()
        while len(order) < len(specs):
            for spec in specs:
                if spec.name in placed:
                    continue
                if all(d in placed or d not in by_name for d in spec.depends_on):
                    order.append(spec.name)
                    placed.add(spec.name)
                    break
        return order

    def _check_cycles(self, specs: Sequence[ServiceSpec], by_name: dict[str, ServiceSpec]) -> None:
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(name: str) -> None:
            visiting.add(name)
            for dependency in by_name[name].depends_on:
                if dependency not in by_name or dependency in done:
                    continue
                if dependency in visiting:
                    raise CyclicDependencyError((name, dependency))
                visit(dependency)
            visiting.discard(name)
            done.add(name)

        for spec in specs:
            if spec.name not in done:
                visit(spec.name)

    # =========================================================================
    # Deployment
    # =========================================================================

    def apply(
        self,
        specs: Sequence[ServiceSpec],
        cancel: Optional[CancellationToken] = None,
    ) -> DeploymentPlan:
        """Bring a set of services to their described state.

        Args:
            specs: Service descriptors.
            cancel: Skips the services not started yet when cancelled.

        Returns:
            What was done per service.

        Raises:
            HealthCheckTimeoutError: If a service or dependency never
                became ready.
            EngineError: The error that aborted a rollout, as raised.
        """
        order = self.plan(specs)
        by_name = {spec.name: spec for spec in specs}
        result = DeploymentPlan(order=order)

        for index, name in enumerate(order):
            if cancel is not None and cancel.cancelled:
                result.cancelled = True
                result.skipped = order[index:]
                logger.info(f"Deployment cancelled; skipping {', '.join(result.skipped)}")
                break
            spec = by_name[name]
            for dependency in spec.depends_on:
                self.wait_ready(dependency)
            for network in spec.networks:
                self._networks.ensure_network(network)

            action, rollout = self._converge(spec, cancel)
            result.actions[name] = action
            if rollout is not None:
                result.rollouts[name] = rollout
                if rollout.status == RolloutStatus.ABORTED:
                    raise rollout.error
            self.wait_ready(name)
            result.completed.append(name)

        return result

    def _converge(
        self,
        spec: ServiceSpec,
        cancel: Optional[CancellationToken],
    ) -> tuple[str, Optional[RolloutResult]]:
        with self._locks.hold(spec.name):
            try:
                service = self._store.find(ResourceKind.SERVICE, spec.name)
            except NotFoundError:
                self._create_service(spec)
                return "create", None

            current = service.spec
            if current.template_key() != spec.template_key():
                return "update", self.update(spec, cancel)
            if current.replicas != spec.replicas:
                self._set_spec(service.service_id, spec)
                self.scale(spec.name, spec.replicas, cancel)
                return "scale", None
            if current != spec:
                self._set_spec(service.service_id, spec)
                return "configure", None
            return "unchanged", None

    def _create_service(self, spec: ServiceSpec) -> None:
        service = Service(
            service_id=create_service_id(),
            name=spec.name,
            spec=spec,
            state=ServiceState.DEPLOYING,
        )
        self._store.create(ResourceKind.SERVICE, service)
        logger.info(f"Created service {spec.name} with {spec.replicas} replica(s)")
        self._publish(EventType.SERVICE_CREATED, service.service_id, name=spec.name, replicas=spec.replicas)
        for _ in range(spec.replicas):
            self._add_replica(spec.name)

    def wait_ready(
        self,
        name: str,
        timeout: Optional[float] = None,
    ) -> ServiceStatus:
        """Wait until a service has ``min_ready`` ready replicas.

        Marks the service ready, or failed on timeout. Cancelling a
        deployment never cuts this wait short.

        Raises:
            NotFoundError: If the service does not exist.
            HealthCheckTimeoutError: If not enough replicas became ready.
        """
        service = self._store.find(ResourceKind.SERVICE, name)
        if timeout is None:
            timeout = self._ready_timeout_for(service.spec)
        subscription = self._bus.subscribe(
            types=READINESS_EVENTS,
            predicate=lambda e: e.kind == ResourceKind.CONTAINER,
            name=f"ready-{name}",
        )
        try:
            deadline = time.monotonic() + timeout
            while True:
                status = self.status(name)
                required = self._store.find(ResourceKind.SERVICE, name).spec.required_ready()
                if status.ready >= required:
                    self._mark_ready(name)
                    return self.status(name)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._mark_failed(name, f"{status.ready}/{required} replicas ready")
                    raise HealthCheckTimeoutError(
                        f"Service {name} has {status.ready}/{required} ready replicas after {timeout:.1f}s",
                        list(status.replicas),
                    )
                subscription.get(timeout=remaining)
        finally:
            subscription.close()

    # =========================================================================
    # Rolling update
    # =========================================================================

    def update(self, spec: ServiceSpec, cancel: Optional[CancellationToken] = None) -> RolloutResult:
        """Roll a service to a new descriptor.

        Each batch of ``parallelism`` new replicas must be ready within
        the monitor window before as many old replicas are retired. A
        failing batch is torn down and the rollout stops, leaving the
        remaining old replicas running.

        Args:
            spec: New descriptor for an existing service.
            cancel: Lets the current batch finish and skips the rest.

        Returns:
            Rollout result.

        Raises:
            NotFoundError: If the service does not exist.
            ValueError: If the descriptor is invalid.
        """
        errors = spec.validation_errors()
        if errors:
            raise ValueError(f"Invalid service {spec.name!r}: {'; '.join(errors)}")

        with self._locks.hold(spec.name):
            service = self._store.find(ResourceKind.SERVICE, spec.name)
            for network in spec.networks:
                self._networks.ensure_network(network)
            if service.spec.template_key() == spec.template_key():
                self._set_spec(service.service_id, spec)
                if len(service.replicas) != spec.replicas:
                    self.scale(spec.name, spec.replicas, cancel)
                return RolloutResult(spec.name, service.revision, RolloutStatus.COMPLETED)

            revision = service.revision + 1

            def begin(record: Service) -> None:
                record.spec = spec
                record.revision = revision
                record.state = ServiceState.UPDATING
                record.updated_at = time.time()

            service = self._store.mutate(ResourceKind.SERVICE, service.service_id, begin)
            old = [c.container_id for c in self._oldest_first(service.replicas)]
            config = spec.rollout_config()
            window = config.monitor_window or self._ready_timeout_for(spec)
            result = RolloutResult(spec.name, revision, RolloutStatus.COMPLETED)
            logger.info(
                f"Rolling {spec.name} to revision {revision} "
                f"({spec.replicas} replica(s), parallelism {config.parallelism})"
            )

            watched: set[str] = set()
            subscription = self._watch(watched, f"rollout-{spec.name}")
            created = 0
            try:
                while created < spec.replicas:
                    if cancel is not None and cancel.cancelled:
                        result.status = RolloutStatus.CANCELLED
                        break
                    if result.batches and config.delay:
                        if cancel is not None:
                            if cancel.wait(config.delay):
                                result.status = RolloutStatus.CANCELLED
                                break
                        else:
                            time.sleep(config.delay)

                    size = min(config.parallelism, spec.replicas - created)
                    batch: list[str] = []
                    try:
                        for _ in range(size):
                            batch.append(self._add_replica(spec.name, watched))
                        self._publish(
                            EventType.ROLLOUT_BATCH,
                            service.service_id,
                            name=spec.name,
                            revision=revision,
                            batch=result.batches + 1,
                            replicas=list(batch),
                        )
                        self._wait_replicas_ready(batch, window, subscription)
                    except EngineError as e:
                        self._abort(service.service_id, spec, batch, result, e)
                        return result

                    retiring, old = old[:size], old[size:]
                    for container_id in retiring:
                        self._retire(spec.name, container_id, spec.stop_timeout)
                    created += size
                    result.batches += 1
                    result.replaced += len(retiring)
            finally:
                subscription.close()

            if result.status == RolloutStatus.COMPLETED:
                # Surplus old replicas when the replica count shrank
                for container_id in old:
                    self._retire(spec.name, container_id, spec.stop_timeout)
                    result.replaced += 1
                self._set_state(spec.name, ServiceState.READY)
                logger.info(f"Service {spec.name} is at revision {revision}")
                self._publish(
                    EventType.ROLLOUT_COMPLETED,
                    service.service_id,
                    name=spec.name,
                    revision=revision,
                    batches=result.batches,
                )
            else:
                self._set_state(spec.name, ServiceState.READY)
                logger.info(f"Rollout of {spec.name} cancelled after {result.batches} batch(es)")
                self._publish(
                    EventType.ROLLOUT_ABORTED,
                    service.service_id,
                    name=spec.name,
                    revision=revision,
                    reason="cancelled",
                )
            return result

    def _abort(
        self,
        service_id: str,
        spec: ServiceSpec,
        batch: list[str],
        result: RolloutResult,
        error: EngineError,
    ) -> None:
        for container_id in batch:
            self._retire(spec.name, container_id, spec.stop_timeout)
        self._set_state(spec.name, ServiceState.UPDATE_FAILED)
        result.status = RolloutStatus.ABORTED
        result.error = error
        logger.error(f"Rollout of {spec.name} aborted in batch {result.batches + 1}: {error}")
        self._publish(
            EventType.ROLLOUT_ABORTED,
            service_id,
            name=spec.name,
            revision=result.revision,
            reason="unhealthy" if isinstance(error, HealthCheckTimeoutError) else "error",
            error=str(error),
        )

    def _watch(self, watched: set[str], name: str) -> Subscription:
        """Pull subscription for readiness events of the replicas in ``watched``."""
        return self._bus.subscribe(
            types=READINESS_EVENTS,
            predicate=lambda e: e.subject_id in watched,
            name=name,
        )

    def _wait_replicas_ready(
        self,
        container_ids: list[str],
        timeout: float,
        subscription: Subscription,
    ) -> None:
        batch = set(container_ids)
        exited: set[str] = set()

        def note(event: Optional[Event]) -> None:
            if event is None or event.subject_id not in batch:
                return
            if event.type in (EventType.CONTAINER_EXITED, EventType.CONTAINER_REMOVED):
                exited.add(event.subject_id)

        deadline = time.monotonic() + timeout
        while True:
            for event in subscription.drain():
                note(event)
            failed = [cid for cid in container_ids if cid in exited]
            pending = []
            for container_id in container_ids:
                if container_id in exited:
                    continue
                try:
                    container = self._containers.get(container_id)
                except NotFoundError:
                    failed.append(container_id)
                    continue
                if container.is_ready():
                    continue
                if not container.is_running() or container.health == HealthStatus.UNHEALTHY:
                    failed.append(container_id)
                else:
                    pending.append(container_id)
            if failed:
                raise HealthCheckTimeoutError(
                    f"{len(failed)} replica(s) exited or became unhealthy", failed
                )
            if not pending:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthCheckTimeoutError(
                    f"{len(pending)} replica(s) not ready within {timeout:.1f}s", pending
                )
            note(subscription.get(timeout=remaining))

    # =========================================================================
    # Scaling and reconciliation
    # =========================================================================

    def scale(
        self,
        name: str,
        replicas: int,
        cancel: Optional[CancellationToken] = None,
        wait: bool = False,
    ) -> ServiceStatus:
        """Change a service's replica count.

        Scaling up adds replicas in batches of ``parallelism``; scaling
        down retires the most recently started replicas first.

        Args:
            name: Service name.
            replicas: New replica count.
            cancel: Checked between batches when scaling up.
            wait: Wait for each new batch to be ready.

        Returns:
            Service status after scaling.

        Raises:
            ValueError: If the count is negative.
            NotFoundError: If the service does not exist.
        """
        if replicas < 0:
            raise ValueError("replicas must be non-negative")

        with self._locks.hold(name):
            service = self._store.find(ResourceKind.SERVICE, name)
            previous = service.spec.replicas
            self._set_spec(service.service_id, replace(service.spec, replicas=replicas))
            live = list(service.replicas)

            target = replicas
            if replicas > len(live):
                missing = replicas - len(live)
                parallelism = service.spec.rollout_config().parallelism
                watched: set[str] = set()
                subscription = self._watch(watched, f"scale-{name}")
                added = 0
                try:
                    while added < missing:
                        if cancel is not None and cancel.cancelled:
                            target = len(live) + added
                            self._set_spec(service.service_id, replace(service.spec, replicas=target))
                            logger.info(f"Scaling {name} cancelled at {target} replica(s)")
                            break
                        size = min(parallelism, missing - added)
                        batch = [self._add_replica(name, watched) for _ in range(size)]
                        if wait:
                            self._wait_replicas_ready(
                                batch, self._ready_timeout_for(service.spec), subscription
                            )
                        added += size
                finally:
                    subscription.close()
            elif replicas < len(live):
                for container in self._newest_first(live)[: len(live) - replicas]:
                    self._retire(name, container.container_id, service.spec.stop_timeout)

            logger.info(f"Scaled {name} from {previous} to {target} replica(s)")
            self._publish(
                EventType.SERVICE_SCALED,
                service.service_id,
                name=name,
                previous=previous,
                replicas=target,
            )
            return self.status(name)

    def reconcile(self, name: str) -> ServiceStatus:
        """Replace dead replicas and trim or fill to the replica count.

        A replica is dead when its record is gone, it never started, or
        it is stopped and its restart policy will not bring it back.

        Raises:
            NotFoundError: If the service does not exist.
        """
        with self._locks.hold(name):
            service = self._store.find(ResourceKind.SERVICE, name)
            replaced = 0
            for container_id in list(service.replicas):
                if self._is_dead(container_id):
                    self._retire(name, container_id, 0)
                    self._add_replica(name)
                    replaced += 1

            service = self._store.find(ResourceKind.SERVICE, name)
            desired = service.spec.replicas
            live = list(service.replicas)
            if len(live) > desired:
                for container in self._newest_first(live)[: len(live) - desired]:
                    self._retire(name, container.container_id, service.spec.stop_timeout)
            for _ in range(desired - len(live)):
                self._add_replica(name)

            if replaced:
                logger.info(f"Reconciled {name}: replaced {replaced} dead replica(s)")
            return self.status(name)

    def remove_service(self, name: str, timeout: Optional[float] = None) -> None:
        """Retire every replica and delete the service.

        Raises:
            NotFoundError: If the service does not exist.
            ConflictError: If another service depends on it.
        """
        with self._locks.hold(name):
            service = self._store.find(ResourceKind.SERVICE, name)
            dependents = self._store.list(
                ResourceKind.SERVICE,
                lambda s: s.service_id != service.service_id and name in s.spec.depends_on,
            )
            if dependents:
                raise ConflictError(f"Service {dependents[0].name} depends on service {name}")
            self._set_state(name, ServiceState.REMOVING)
            stop_timeout = timeout if timeout is not None else service.spec.stop_timeout
            for container in self._newest_first(service.replicas):
                self._retire(name, container.container_id, stop_timeout)
            self._store.delete(ResourceKind.SERVICE, service.service_id)
            logger.info(f"Removed service {name}")
            self._publish(EventType.SERVICE_REMOVED, service.service_id, name=name)
        self._locks.discard(name)

    def status(self, name: str) -> ServiceStatus:
        """Get a point-in-time view of a service."""
        service = self._store.find(ResourceKind.SERVICE, name)
        running = ready = 0
        for container_id in service.replicas:
            try:
                container = self._containers.get(container_id)
            except NotFoundError:
                continue
            if container.is_running():
                running += 1
            if container.is_ready():
                ready += 1
        return ServiceStatus(
            name=service.name,
            state=service.state,
            revision=service.revision,
            desired=service.spec.replicas,
            running=running,
            ready=ready,
            replicas=list(service.replicas),
        )

    def get_service(self, name: str) -> Service:
        return self._store.find(ResourceKind.SERVICE, name)

    def list_services(self) -> list[Service]:
        return self._store.list(ResourceKind.SERVICE)

    # =========================================================================
    # Replicas
    # =========================================================================

    def _add_replica(self, name: str, watched: Optional[set[str]] = None) -> str:
        # Caller holds the service lock
        service = self._store.find(ResourceKind.SERVICE, name)
        spec = service.spec
        ordinal = {}

        def take_ordinal(record: Service) -> None:
            ordinal["value"] = record.next_ordinal
            record.next_ordinal += 1

        self._store.mutate(ResourceKind.SERVICE, service.service_id, take_ordinal)
        labels = dict(spec.labels)
        labels[SERVICE_LABEL] = name
        labels[REVISION_LABEL] = str(service.revision)
        config = ContainerConfig(
            image=spec.image,
            command=list(spec.command),
            env=dict(spec.env),
            name=f"{name}-{ordinal['value']}",
            restart_policy=spec.restart_policy,
            limits=spec.limits,
            health_check=spec.health_check,
            labels=labels,
            mounts=list(spec.volumes),
            networks=[NetworkAttachment(network, aliases=(name,)) for network in spec.networks],
        )
        container = self._containers.create(config)

        def own(record: Service) -> None:
            record.replicas.append(container.container_id)
            record.updated_at = time.time()

        self._store.mutate(ResourceKind.SERVICE, service.service_id, own)
        if watched is not None:
            watched.add(container.container_id)
        try:
            self._containers.start(container.container_id)
        except SandboxFailureError:
            self._retire(name, container.container_id, 0)
            raise
        return container.container_id

    def _retire(self, name: str, container_id: str, timeout: Optional[float]) -> None:
        # Disown first so exits during the stop never trigger a reconcile
        def disown(record: Service) -> None:
            if container_id in record.replicas:
                record.replicas.remove(container_id)
                record.updated_at = time.time()

        service = self._store.find(ResourceKind.SERVICE, name)
        self._store.mutate(ResourceKind.SERVICE, service.service_id, disown)
        try:
            container = self._containers.get(container_id)
        except NotFoundError:
            return
        if container.is_running():
            try:
                self._containers.stop(container_id, timeout)
            except (InvalidStateError, SandboxFailureError) as e:
                logger.warning(f"Stopping replica {container.display_name} failed: {e}")
        try:
            self._containers.remove(container_id, force=True)
        except NotFoundError:
            pass
        with self._declined_lock:
            self._declined.discard(container_id)

    def _is_dead(self, container_id: str) -> bool:
        try:
            container = self._containers.get(container_id)
        except NotFoundError:
            return True
        if container.state == ContainerState.CREATED:
            return True
        if container.state != ContainerState.STOPPED:
            return False
        with self._declined_lock:
            if container_id in self._declined:
                return True
        return not container.restart_policy.should_restart(
            container.exit_code or 0, container.explicit_stop, container.failure_count
        )

    def _newest_first(self, container_ids: Iterable[str]) -> list[Container]:
        containers = []
        for container_id in container_ids:
            try:
                containers.append(self._containers.get(container_id))
            except NotFoundError:
                containers.append(Container(container_id=container_id, image=""))
        # Never-started replicas count as the newest
        return sorted(containers, key=lambda c: (c.start_sequence == 0, c.start_sequence), reverse=True)

    def _oldest_first(self, container_ids: Iterable[str]) -> list[Container]:
        return list(reversed(self._newest_first(container_ids)))

    # =========================================================================
    # Internals
    # =========================================================================

    def _on_restart_declined(self, event: Event) -> None:
        with self._declined_lock:
            self._declined.add(event.subject_id)
        if not self._auto_reconcile:
            return
        owners = self._store.list(ResourceKind.SERVICE, lambda s: event.subject_id in s.replicas)
        for service in owners:
            logger.info(f"Replica {event.subject_id[:12]} of {service.name} is dead; reconciling")
            self._executor.submit(self._reconcile_quietly, service.name)

    def _reconcile_quietly(self, name: str) -> None:
        try:
            self.reconcile(name)
        except NotFoundError:
            pass
        except EngineError as e:
            logger.error(f"Automatic reconcile of {name} failed: {e}")

    def _ready_timeout_for(self, spec: ServiceSpec) -> float:
        if spec.health_check is not None:
            return max(spec.health_check.ready_deadline(), self._ready_timeout)
        return self._ready_timeout

    def _service_exists(self, name: str) -> bool:
        try:
            self._store.find(ResourceKind.SERVICE, name)
        except NotFoundError:
            return False
        return True

    def _set_spec(self, service_id: str, spec: ServiceSpec) -> None:
        def apply(record: Service) -> None:
            record.spec = spec
            record.updated_at = time.time()

        self._store.mutate(ResourceKind.SERVICE, service_id, apply)

    def _set_state(self, name: str, state: ServiceState) -> Service:
        service = self._store.find(ResourceKind.SERVICE, name)

        def apply(record: Service) -> None:
            record.state = state
            record.updated_at = time.time()

        return self._store.mutate(ResourceKind.SERVICE, service.service_id, apply)

    def _mark_ready(self, name: str) -> None:
        service = self._store.find(ResourceKind.SERVICE, name)
        if service.state in (ServiceState.READY, ServiceState.UPDATING, ServiceState.REMOVING):
            return
        self._set_state(name, ServiceState.READY)
        logger.info(f"Service {name} is ready")
        self._publish(EventType.SERVICE_READY, service.service_id, name=name, revision=service.revision)

    def _mark_failed(self, name: str, reason: str) -> None:
        service = self._set_state(name, ServiceState.FAILED)
        logger.error(f"Service {name} failed: {reason}")
        self._publish(EventType.SERVICE_FAILED, service.service_id, name=name, reason=reason)

    def _publish(self, event_type: EventType, service_id: str, **attributes) -> None:
        self._bus.publish(Event(event_type, ResourceKind.SERVICE, service_id, attributes))
