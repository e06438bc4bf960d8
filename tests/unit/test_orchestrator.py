"""Unit tests for the service orchestrator."""

import threading
from typing import Generator

import pytest

from container_engine.adapters.outbound import MockHealthProbe, MockProcessSandbox, ProcessBehavior
from container_engine.domain.entities import (
    REVISION_LABEL,
    SERVICE_LABEL,
    ContainerState,
    EventType,
    HealthCheckSpec,
    ServiceSpec,
    ServiceState,
    UpdateConfig,
)
from container_engine.domain.errors import (
    ConflictError,
    CyclicDependencyError,
    HealthCheckTimeoutError,
    NotFoundError,
    SandboxFailureError,
)
from container_engine.domain.services import (
    CancellationToken,
    ContainerManager,
    EventBus,
    HealthMonitor,
    NetworkManager,
    Orchestrator,
    ResourceStore,
    RestartManager,
    RolloutStatus,
    TimerService,
)

FAST_CHECK = HealthCheckSpec(command=("check",), interval=0.02, timeout=1.0, retries=1)


@pytest.fixture
def orchestrator(
    store: ResourceStore, containers: ContainerManager, networks: NetworkManager, bus: EventBus
) -> Generator[Orchestrator, None, None]:
    o = Orchestrator(store, containers, networks, bus, ready_timeout=2.0)
    o.start()
    yield o
    o.close()


@pytest.fixture
def health(
    containers: ContainerManager, bus: EventBus, timers: TimerService, probe: MockHealthProbe
) -> Generator[HealthMonitor, None, None]:
    monitor = HealthMonitor(containers, bus, timers, probe)
    monitor.start()
    yield monitor
    monitor.close()


def replica_names(orchestrator: Orchestrator, containers: ContainerManager, name: str) -> list[str]:
    return sorted(containers.get(cid).name for cid in orchestrator.get_service(name).replicas)


@pytest.mark.unit
class TestPlan:
    """Tests for dependency ordering."""

    def test_dependencies_first(self, orchestrator: Orchestrator):
        """Test that every service follows its dependencies."""
        specs = [
            ServiceSpec(name="web", image="web:1", depends_on=["api"]),
            ServiceSpec(name="api", image="api:1", depends_on=["db", "cache"]),
            ServiceSpec(name="db", image="db:1"),
            ServiceSpec(name="cache", image="cache:1"),
        ]
        assert orchestrator.plan(specs) == ["db", "cache", "api", "web"]

    def test_independent_keep_input_order(self, orchestrator: Orchestrator):
        specs = [ServiceSpec(name=n, image="app:1") for n in ("c", "a", "b")]
        assert orchestrator.plan(specs) == ["c", "a", "b"]

    def test_cycle_detected(self, orchestrator: Orchestrator):
        specs = [
            ServiceSpec(name="a", image="app:1", depends_on=["b"]),
            ServiceSpec(name="b", image="app:1", depends_on=["c"]),
            ServiceSpec(name="c", image="app:1", depends_on=["a"]),
        ]
        with pytest.raises(CyclicDependencyError):
            orchestrator.plan(specs)

    def test_self_dependency_invalid(self, orchestrator: Orchestrator):
        with pytest.raises(ValueError):
            orchestrator.plan([ServiceSpec(name="a", image="app:1", depends_on=["a"])])

    def test_unknown_dependency(self, orchestrator: Orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.plan([ServiceSpec(name="web", image="web:1", depends_on=["db"])])

    def test_duplicate_names(self, orchestrator: Orchestrator):
        with pytest.raises(ValueError):
            orchestrator.plan([ServiceSpec(name="a", image="x:1"), ServiceSpec(name="a", image="y:1")])


@pytest.mark.unit
class TestApply:
    """Tests for deploying service sets."""

    def test_creates_replicas(self, orchestrator: Orchestrator, containers: ContainerManager):
        """Test that replicas are named by ordinal and labelled with their service."""
        plan = orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=3)])
        assert plan.completed == ["web"]
        assert plan.actions == {"web": "create"}

        assert replica_names(orchestrator, containers, "web") == ["web-1", "web-2", "web-3"]
        replica = containers.find("web-1")
        assert replica.state == ContainerState.RUNNING
        assert replica.labels[SERVICE_LABEL] == "web"
        assert replica.labels[REVISION_LABEL] == "1"

        status = orchestrator.status("web")
        assert status.state == ServiceState.READY
        assert status.converged

    def test_dependencies_start_first(self, orchestrator: Orchestrator, containers: ContainerManager):
        orchestrator.apply([
            ServiceSpec(name="web", image="web:1", depends_on=["db"]),
            ServiceSpec(name="db", image="db:1"),
        ])
        assert containers.find("db-1").start_sequence < containers.find("web-1").start_sequence

    def test_replicas_share_alias(
        self, orchestrator: Orchestrator, networks: NetworkManager, containers: ContainerManager
    ):
        """Test that the service name resolves to every replica on its networks."""
        orchestrator.apply([ServiceSpec(name="api", image="api:1", replicas=2, networks=["backend"])])
        addresses = networks.resolve_all("backend", "api")
        assert len(addresses) == 2
        assert networks.resolve("backend", "api-2") in addresses

    def test_reapply_actions(self, orchestrator: Orchestrator):
        spec = ServiceSpec(name="web", image="web:1", replicas=2)
        orchestrator.apply([spec])
        assert orchestrator.apply([spec]).actions == {"web": "unchanged"}
        assert orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=3)]).actions == {"web": "scale"}
        assert orchestrator.apply([ServiceSpec(name="web", image="web:2", replicas=3)]).actions == {"web": "update"}
        assert orchestrator.get_service("web").revision == 2

    def test_cancelled_apply_skips_rest(self, orchestrator: Orchestrator):
        token = CancellationToken()
        token.cancel()
        plan = orchestrator.apply([ServiceSpec(name="a", image="a:1")], cancel=token)
        assert plan.cancelled
        assert plan.skipped == ["a"]
        assert orchestrator.list_services() == []

    def test_cancel_during_health_check_finishes_current(
        self, orchestrator: Orchestrator, health: HealthMonitor
    ):
        """Test that cancelling lets the service in progress become ready."""
        slow_check = HealthCheckSpec(command=("check",), interval=0.3, timeout=1.0, retries=2)
        token = CancellationToken()
        timer = threading.Timer(0.1, token.cancel)
        timer.start()
        try:
            plan = orchestrator.apply([
                ServiceSpec(name="db", image="db:1", health_check=slow_check),
                ServiceSpec(name="web", image="web:1", depends_on=["db"]),
            ], cancel=token)
        finally:
            timer.cancel()

        assert plan.cancelled
        assert plan.completed == ["db"]
        assert plan.skipped == ["web"]
        assert orchestrator.get_service("db").state == ServiceState.READY
        assert orchestrator.status("db").ready == 1
        assert [s.name for s in orchestrator.list_services()] == ["db"]

    def test_replica_owned_by_service(self, orchestrator: Orchestrator, containers: ContainerManager):
        orchestrator.apply([ServiceSpec(name="web", image="web:1")])
        with pytest.raises(ConflictError):
            containers.remove("web-1", force=True)


@pytest.mark.unit
class TestReadiness:
    """Tests for health-gated readiness."""

    def test_waits_for_health(
        self, orchestrator: Orchestrator, health: HealthMonitor, containers: ContainerManager
    ):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=2, health_check=FAST_CHECK)])
        assert orchestrator.status("web").ready == 2

    def test_timeout_marks_failed(
        self, orchestrator: Orchestrator, health: HealthMonitor, probe: MockHealthProbe, bus: EventBus
    ):
        """Test that a service that never becomes healthy fails."""
        probe.set_image_result("web:1", False)
        spec = ServiceSpec(name="web", image="web:1", health_check=FAST_CHECK)
        with pytest.raises(HealthCheckTimeoutError):
            orchestrator.apply([spec])
        assert orchestrator.get_service("web").state == ServiceState.FAILED
        assert len(bus.history([EventType.SERVICE_FAILED])) == 1

    def test_zero_replicas_ready(self, orchestrator: Orchestrator):
        orchestrator.apply([ServiceSpec(name="idle", image="app:1", replicas=0)])
        assert orchestrator.get_service("idle").state == ServiceState.READY


@pytest.mark.unit
class TestScale:
    """Tests for scaling."""

    def test_scale_down_removes_newest(self, orchestrator: Orchestrator, containers: ContainerManager):
        """Test that scaling 5 to 2 keeps the two earliest-started replicas."""
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=5)])
        status = orchestrator.scale("web", 2)

        assert status.desired == 2
        assert replica_names(orchestrator, containers, "web") == ["web-1", "web-2"]
        for name in ("web-3", "web-4", "web-5"):
            with pytest.raises(NotFoundError):
                containers.find(name)

    def test_scale_up(self, orchestrator: Orchestrator, containers: ContainerManager, bus: EventBus):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=1)])
        status = orchestrator.scale("web", 3, wait=True)
        assert status.ready == 3
        assert replica_names(orchestrator, containers, "web") == ["web-1", "web-2", "web-3"]
        scaled = bus.history([EventType.SERVICE_SCALED])
        assert scaled[-1].get("previous") == 1
        assert scaled[-1].get("replicas") == 3

    def test_ordinals_not_reused(self, orchestrator: Orchestrator, containers: ContainerManager):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=2)])
        orchestrator.scale("web", 1)
        orchestrator.scale("web", 2)
        assert replica_names(orchestrator, containers, "web") == ["web-1", "web-3"]

    def test_negative_rejected(self, orchestrator: Orchestrator):
        orchestrator.apply([ServiceSpec(name="web", image="web:1")])
        with pytest.raises(ValueError):
            orchestrator.scale("web", -1)

    def test_cancelled_scale_up(self, orchestrator: Orchestrator):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=1)])
        token = CancellationToken()
        token.cancel()
        status = orchestrator.scale("web", 4, cancel=token)
        assert status.desired == 1
        assert len(status.replicas) == 1


@pytest.mark.unit
class TestRollingUpdate:
    """Tests for rolling updates."""

    def test_ready_floor_holds(
        self, orchestrator: Orchestrator, containers: ContainerManager, bus: EventBus
    ):
        """Test that ready replicas never drop below replicas minus parallelism."""
        update = UpdateConfig(parallelism=2)
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=4, update_config=update)])

        samples: list[int] = []
        sub = bus.subscribe(
            lambda e: samples.append(orchestrator.status("web").ready),
            types=[EventType.CONTAINER_STARTED, EventType.CONTAINER_EXITED, EventType.CONTAINER_REMOVED],
        )
        result = orchestrator.update(ServiceSpec(name="web", image="web:2", replicas=4, update_config=update))
        assert sub.wait_idle(timeout=2)
        sub.close()

        assert result.ok
        assert result.batches == 2
        assert result.replaced == 4
        assert min(samples) >= 4 - 2
        images = {containers.get(cid).image for cid in orchestrator.get_service("web").replicas}
        assert images == {"web:2"}
        assert orchestrator.status("web").state == ServiceState.READY
        assert len(bus.history([EventType.ROLLOUT_BATCH])) == 2

    def test_unhealthy_batch_aborts(
        self,
        orchestrator: Orchestrator,
        health: HealthMonitor,
        probe: MockHealthProbe,
        containers: ContainerManager,
        bus: EventBus,
    ):
        """Test that an unhealthy new revision stops the rollout and keeps old replicas."""
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=3, health_check=FAST_CHECK)])
        probe.set_image_result("web:2", False)

        result = orchestrator.update(
            ServiceSpec(name="web", image="web:2", replicas=3, health_check=FAST_CHECK)
        )
        assert result.status == RolloutStatus.ABORTED
        assert isinstance(result.error, HealthCheckTimeoutError)
        assert result.batches == 0

        service = orchestrator.get_service("web")
        assert service.state == ServiceState.UPDATE_FAILED
        assert {containers.get(cid).image for cid in service.replicas} == {"web:1"}
        assert orchestrator.status("web").ready == 3
        aborted = bus.history([EventType.ROLLOUT_ABORTED])
        assert aborted[-1].get("reason") == "unhealthy"

    def test_spawn_failure_aborts(
        self, orchestrator: Orchestrator, sandbox: MockProcessSandbox, containers: ContainerManager
    ):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=2)])
        sandbox.set_behavior("web:2", ProcessBehavior(fail_spawn=True))
        result = orchestrator.update(ServiceSpec(name="web", image="web:2", replicas=2))
        assert result.status == RolloutStatus.ABORTED
        assert isinstance(result.error, SandboxFailureError)
        assert len(orchestrator.get_service("web").replicas) == 2
        assert containers.list(lambda c: c.image == "web:2") == []

    def test_apply_raises_on_abort(
        self, orchestrator: Orchestrator, sandbox: MockProcessSandbox
    ):
        orchestrator.apply([ServiceSpec(name="web", image="web:1")])
        sandbox.set_behavior("web:2", ProcessBehavior(fail_spawn=True))
        with pytest.raises(SandboxFailureError):
            orchestrator.apply([ServiceSpec(name="web", image="web:2")])
        assert orchestrator.get_service("web").state == ServiceState.UPDATE_FAILED

    def test_cancelled_rollout(self, orchestrator: Orchestrator, bus: EventBus):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=2)])
        token = CancellationToken()
        token.cancel()
        result = orchestrator.update(ServiceSpec(name="web", image="web:2", replicas=2), cancel=token)
        assert result.status == RolloutStatus.CANCELLED
        assert orchestrator.get_service("web").state == ServiceState.READY
        assert bus.history([EventType.ROLLOUT_ABORTED])[-1].get("reason") == "cancelled"

    def test_update_declares_new_networks(
        self, orchestrator: Orchestrator, networks: NetworkManager
    ):
        orchestrator.apply([ServiceSpec(name="web", image="web:1")])
        result = orchestrator.update(ServiceSpec(name="web", image="web:1", networks=["edge"]))
        assert result.ok
        assert networks.resolve("edge", "web") == networks.resolve("edge", "web-2")

    def test_same_template_is_not_a_rollout(self, orchestrator: Orchestrator):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=1)])
        result = orchestrator.update(ServiceSpec(name="web", image="web:1", replicas=2))
        assert result.ok
        assert result.batches == 0
        assert orchestrator.get_service("web").revision == 1
        assert len(orchestrator.get_service("web").replicas) == 2


@pytest.mark.unit
class TestReconcileAndRemove:
    """Tests for reconciliation and service removal."""

    def test_reconcile_replaces_dead(
        self, orchestrator: Orchestrator, containers: ContainerManager, sandbox: MockProcessSandbox
    ):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=2)])
        dead = containers.find("web-1")
        sandbox.exit(dead.pid, 1)
        containers.wait(dead.container_id, timeout=2)

        status = orchestrator.reconcile("web")
        assert dead.container_id not in status.replicas
        assert replica_names(orchestrator, containers, "web") == ["web-2", "web-3"]
        assert status.running == 2

    def test_auto_reconcile_on_declined_restart(
        self,
        store: ResourceStore,
        containers: ContainerManager,
        networks: NetworkManager,
        bus: EventBus,
        timers: TimerService,
        sandbox: MockProcessSandbox,
        wait_until,
    ):
        """Test that a replica whose restart is declined gets replaced."""
        restarts = RestartManager(containers, bus, timers, backoff_initial=0.01)
        auto = Orchestrator(store, containers, networks, bus, ready_timeout=2.0, auto_reconcile=True)
        restarts.start()
        auto.start()
        try:
            auto.apply([ServiceSpec(name="web", image="web:1", replicas=1)])
            first = containers.find("web-1")
            sandbox.exit(first.pid, 1)

            def replaced() -> bool:
                replicas = auto.status("web").replicas
                return len(replicas) == 1 and replicas[0] != first.container_id

            assert wait_until(replaced)
            assert containers.find("web-2").container_id == auto.status("web").replicas[0]
            assert wait_until(lambda: auto.status("web").running == 1)
        finally:
            auto.close()
            restarts.close()

    def test_remove_service(
        self, orchestrator: Orchestrator, containers: ContainerManager, bus: EventBus
    ):
        orchestrator.apply([ServiceSpec(name="web", image="web:1", replicas=2)])
        orchestrator.remove_service("web", timeout=0)
        assert orchestrator.list_services() == []
        assert containers.list() == []
        assert len(bus.history([EventType.SERVICE_REMOVED])) == 1

    def test_remove_with_dependents(self, orchestrator: Orchestrator):
        orchestrator.apply([
            ServiceSpec(name="db", image="db:1"),
            ServiceSpec(name="web", image="web:1", depends_on=["db"]),
        ])
        with pytest.raises(ConflictError):
            orchestrator.remove_service("db")
        orchestrator.remove_service("web", timeout=0)
        orchestrator.remove_service("db", timeout=0)
