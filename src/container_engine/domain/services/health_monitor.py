"""Health-check polling.

Each running container with a health check gets a probe schedule on the
timer service: the first probe after ``start_period``, then one every
``interval``. ``retries`` consecutive passing probes mark the run
healthy and ``retries`` consecutive failures mark it unhealthy. A paused
container keeps its schedule but is not probed.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from container_engine.domain.entities import (
    ContainerState,
    Event,
    EventType,
    HealthCheckSpec,
    HealthStatus,
)
from container_engine.domain.errors import NotFoundError
from container_engine.domain.services.container_manager import ContainerManager
from container_engine.domain.services.event_bus import EventBus, Subscription
from container_engine.domain.services.timer_service import TimerHandle, TimerService
from container_engine.ports.outbound import HealthProbePort, ProbeError

logger = logging.getLogger(__name__)


@dataclass
class _Schedule:
    run_id: int
    spec: HealthCheckSpec
    successes: int = 0
    failures: int = 0
    probes: int = 0
    timer: Optional[TimerHandle] = None


class HealthMonitor:
    """Polls health probes and records health transitions."""

    def __init__(
        self,
        containers: ContainerManager,
        bus: EventBus,
        timers: TimerService,
        probe: HealthProbePort,
        workers: int = 4,
    ) -> None:
        """Initialize health monitor.

        Args:
            containers: Container manager recording the transitions.
            bus: Event bus.
            timers: Timer service driving the probe interval.
            probe: Probe runner.
            workers: Probes that may run at the same time.
        """
        self._containers = containers
        self._bus = bus
        self._timers = timers
        self._probe = probe
        self._lock = threading.Lock()
        self._schedules: dict[str, _Schedule] = {}
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="health-probe")
        self._subscription: Optional[Subscription] = None
        self._closed = False

    def start(self) -> None:
        """Begin watching container starts and exits."""
        if self._subscription is None:
            self._subscription = self._bus.subscribe(
                self._on_event,
                types=[
                    EventType.CONTAINER_STARTED,
                    EventType.CONTAINER_EXITED,
                    EventType.CONTAINER_REMOVED,
                ],
                name="health-monitor",
            )

    def close(self) -> None:
        """Stop every schedule and wait for running probes."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        with self._lock:
            self._closed = True
            for schedule in self._schedules.values():
                if schedule.timer is not None:
                    schedule.timer.cancel()
            self._schedules.clear()
        self._executor.shutdown(wait=True)

    def watched(self) -> list[str]:
        """Container IDs with an active probe schedule."""
        with self._lock:
            return list(self._schedules)

    def probe_count(self, container_id: str) -> int:
        """Probes run for the container's current run."""
        with self._lock:
            schedule = self._schedules.get(container_id)
            return schedule.probes if schedule else 0

    def _on_event(self, event: Event) -> None:
        container_id = event.subject_id
        if event.type == EventType.CONTAINER_STARTED:
            self._watch(container_id, event.get("run_id"))
        else:
            self._unwatch(container_id)

    def _watch(self, container_id: str, run_id: int) -> None:
        try:
            container = self._containers.get(container_id)
        except NotFoundError:
            return
        if container.health_check is None or container.run_id != run_id:
            return
        schedule = _Schedule(run_id=run_id, spec=container.health_check)
        with self._lock:
            if self._closed:
                return
            previous = self._schedules.pop(container_id, None)
            if previous is not None and previous.timer is not None:
                previous.timer.cancel()
            self._schedules[container_id] = schedule
            schedule.timer = self._timers.call_later(
                schedule.spec.start_period, self._on_due, container_id, run_id
            )
        logger.debug(f"Watching health of {container.display_name} (run {run_id})")

    def _unwatch(self, container_id: str) -> None:
        with self._lock:
            schedule = self._schedules.pop(container_id, None)
        if schedule is not None and schedule.timer is not None:
            schedule.timer.cancel()

    def _on_due(self, container_id: str, run_id: int) -> None:
        # Timer thread: probes run on the executor
        try:
            self._executor.submit(self._run_probe, container_id, run_id)
        except RuntimeError:
            # Executor shut down
            pass

    def _run_probe(self, container_id: str, run_id: int) -> None:
        with self._lock:
            schedule = self._schedules.get(container_id)
        if schedule is None or schedule.run_id != run_id:
            return
        try:
            container = self._containers.get(container_id)
        except NotFoundError:
            self._unwatch(container_id)
            return
        if container.run_id != run_id or not container.is_running():
            self._unwatch(container_id)
            return

        if container.state != ContainerState.PAUSED:
            passed = self._check(container, schedule.spec)
            status = self._record(container_id, schedule, passed)
            if status is not None:
                self._containers.set_health(container_id, run_id, status)

        with self._lock:
            if self._closed or self._schedules.get(container_id) is not schedule:
                return
            schedule.timer = self._timers.call_later(
                schedule.spec.interval, self._on_due, container_id, run_id
            )

    def _check(self, container, spec: HealthCheckSpec) -> bool:
        started = time.monotonic()
        try:
            passed = self._probe.check(container, spec.command, spec.timeout)
        except ProbeError as e:
            logger.debug(f"Probe of {container.display_name} could not run: {e}")
            return False
        if time.monotonic() - started > spec.timeout:
            logger.debug(f"Probe of {container.display_name} timed out")
            return False
        return bool(passed)

    def _record(self, container_id: str, schedule: _Schedule, passed: bool) -> Optional[HealthStatus]:
        with self._lock:
            schedule.probes += 1
            if passed:
                schedule.successes += 1
                schedule.failures = 0
                if schedule.successes >= schedule.spec.retries:
                    return HealthStatus.HEALTHY
            else:
                schedule.failures += 1
                schedule.successes = 0
                if schedule.failures >= schedule.spec.retries:
                    return HealthStatus.UNHEALTHY
        return None
