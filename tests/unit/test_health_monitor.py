"""Unit tests for health-check polling."""

from typing import Generator

import pytest

from container_engine.adapters.outbound import MockHealthProbe
from container_engine.domain.entities import (
    ContainerConfig,
    EventType,
    HealthCheckSpec,
    HealthStatus,
)
from container_engine.domain.services import (
    ContainerManager,
    EventBus,
    HealthMonitor,
    TimerService,
)

FAST_CHECK = HealthCheckSpec(command=("true",), interval=0.02, timeout=1.0, retries=2)


@pytest.fixture
def health(
    containers: ContainerManager, bus: EventBus, timers: TimerService, probe: MockHealthProbe
) -> Generator[HealthMonitor, None, None]:
    monitor = HealthMonitor(containers, bus, timers, probe, workers=2)
    monitor.start()
    yield monitor
    monitor.close()


def start_checked(containers: ContainerManager, name: str, image: str = "app:1", check=FAST_CHECK) -> str:
    container = containers.create(ContainerConfig(image=image, name=name, health_check=check))
    containers.start(name)
    return container.container_id


@pytest.mark.unit
class TestHealthMonitor:
    """Tests for HealthMonitor."""

    def test_starting_then_healthy(self, health, containers: ContainerManager, wait_until):
        """Test that retries consecutive passes mark the run healthy."""
        cid = start_checked(containers, "web")
        assert containers.get(cid).health == HealthStatus.STARTING

        assert wait_until(lambda: containers.get(cid).health == HealthStatus.HEALTHY)
        assert containers.get(cid).is_ready()

    def test_failing_probe_marks_unhealthy(
        self, health, containers: ContainerManager, probe: MockHealthProbe, bus: EventBus, wait_until
    ):
        probe.set_image_result("bad:1", False)
        cid = start_checked(containers, "web", image="bad:1")

        assert wait_until(lambda: containers.get(cid).health == HealthStatus.UNHEALTHY)
        statuses = [e.get("status") for e in bus.history([EventType.CONTAINER_HEALTH]) if e.subject_id == cid]
        assert statuses == ["unhealthy"]

    def test_broken_probe_counts_as_failure(
        self, health, containers: ContainerManager, probe: MockHealthProbe, wait_until
    ):
        probe.break_probe("app:1")
        cid = start_checked(containers, "web")
        assert wait_until(lambda: containers.get(cid).health == HealthStatus.UNHEALTHY)

    def test_recovers_to_healthy(
        self, health, containers: ContainerManager, probe: MockHealthProbe, wait_until
    ):
        """Test that a run can go unhealthy and back."""
        probe.set_container_result("web", False)
        cid = start_checked(containers, "web")
        assert wait_until(lambda: containers.get(cid).health == HealthStatus.UNHEALTHY)

        probe.set_container_result("web", True)
        assert wait_until(lambda: containers.get(cid).health == HealthStatus.HEALTHY)

    def test_no_check_not_watched(self, health, containers: ContainerManager, bus: EventBus):
        created = containers.create(ContainerConfig(image="app:1", name="plain"))
        containers.start("plain")
        assert bus.wait_idle(timeout=2)
        assert created.container_id not in health.watched()
        assert containers.get(created.container_id).health == HealthStatus.NONE

    def test_paused_not_probed(
        self, health, containers: ContainerManager, probe: MockHealthProbe, wait_until
    ):
        slow = HealthCheckSpec(command=("true",), interval=0.05, timeout=1.0, retries=1)
        cid = start_checked(containers, "web", check=slow)
        assert wait_until(lambda: probe.check_count(cid) >= 1)
        containers.pause("web")
        # Let a probe already handed to a worker finish
        wait_until(lambda: False, timeout=0.1)
        count = probe.check_count(cid)

        assert not wait_until(lambda: probe.check_count(cid) > count, timeout=0.2)
        containers.unpause("web")
        assert wait_until(lambda: probe.check_count(cid) > count)

    def test_exit_stops_schedule(
        self, health, containers: ContainerManager, bus: EventBus, wait_until
    ):
        """Test that a stopped container is no longer probed."""
        cid = start_checked(containers, "web")
        assert wait_until(lambda: cid in health.watched())
        containers.stop("web", timeout=0)
        assert wait_until(lambda: cid not in health.watched())

    def test_start_period_delays_first_probe(
        self, health, containers: ContainerManager, probe: MockHealthProbe, wait_until
    ):
        delayed = HealthCheckSpec(command=("true",), interval=0.02, timeout=1.0, retries=1, start_period=0.3)
        cid = start_checked(containers, "web", check=delayed)
        assert not wait_until(lambda: probe.check_count(cid) > 0, timeout=0.15)
        assert wait_until(lambda: probe.check_count(cid) > 0)
