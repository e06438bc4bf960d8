"""Restart policy evaluation.

Listens for exit events and brings containers back according to their
restart policy, after an exponential back-off. The back-off grows with
every consecutive policy restart and resets when a run ends cleanly.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from container_engine.domain.entities import (
    Container,
    Event,
    EventType,
    ResourceKind,
    RestartPolicyKind,
)
from container_engine.domain.errors import EngineError, NotFoundError
from container_engine.domain.services.container_manager import ContainerManager
from container_engine.domain.services.event_bus import EventBus, Subscription
from container_engine.domain.services.timer_service import TimerHandle, TimerService

logger = logging.getLogger(__name__)


class RestartManager:
    """Applies restart policies on container exit.

    Example:
        restarts = RestartManager(containers, bus, timers)
        restarts.start()
        ...
        restarts.close()
    """

    def __init__(
        self,
        containers: ContainerManager,
        bus: EventBus,
        timers: TimerService,
        backoff_initial: float = 0.1,
        backoff_max: float = 10.0,
    ) -> None:
        """Initialize restart manager.

        Args:
            containers: Container manager performing the restarts.
            bus: Event bus.
            timers: Timer service for back-off delays.
            backoff_initial: Delay before the first restart in seconds.
            backoff_max: Upper bound of the delay in seconds.
        """
        self._containers = containers
        self._bus = bus
        self._timers = timers
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._lock = threading.Lock()
        self._streaks: dict[str, int] = {}
        self._pending: dict[str, TimerHandle] = {}
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="restart")
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        """Begin listening for exits."""
        if self._subscription is None:
            self._subscription = self._bus.subscribe(
                self._on_event,
                types=[EventType.CONTAINER_EXITED, EventType.CONTAINER_REMOVED],
                name="restart-manager",
            )

    def close(self) -> None:
        """Stop listening and cancel pending restarts."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        with self._lock:
            for handle in self._pending.values():
                handle.cancel()
            self._pending.clear()
        self._executor.shutdown(wait=True)

    def backoff(self, streak: int) -> float:
        """Delay before the given consecutive restart (1-based)."""
        delay = self._backoff_initial * (2 ** max(streak - 1, 0))
        return min(delay, self._backoff_max)

    def pending_restarts(self) -> int:
        with self._lock:
            return len(self._pending)

    def _on_event(self, event: Event) -> None:
        if event.type == EventType.CONTAINER_REMOVED:
            with self._lock:
                self._streaks.pop(event.subject_id, None)
                handle = self._pending.pop(event.subject_id, None)
            if handle is not None:
                handle.cancel()
            return
        self.evaluate(event)

    def evaluate(self, event: Event) -> bool:
        """Decide on one exit event.

        Returns:
            True if a restart was scheduled.
        """
        container_id = event.subject_id
        if event.get("removing"):
            return False
        try:
            container = self._containers.get(container_id)
        except NotFoundError:
            return False

        exit_code = event.get("exit_code", container.exit_code)
        explicit = event.get("explicit", container.explicit_stop)
        failures = event.get("failure_count", container.failure_count)
        policy = container.restart_policy

        if not policy.should_restart(exit_code, explicit, failures):
            self._decline(container, event, self._reason(container, exit_code, explicit))
            return False

        with self._lock:
            streak = 1 if exit_code == 0 else self._streaks.get(container_id, 0) + 1
            self._streaks[container_id] = streak
            delay = self.backoff(streak)
            handle = self._timers.call_later(
                delay, self._on_backoff_elapsed, container_id, event.get("run_id")
            )
            previous = self._pending.pop(container_id, None)
            self._pending[container_id] = handle
        if previous is not None:
            previous.cancel()

        logger.info(
            f"Restarting {container.display_name} in {delay:.2f}s "
            f"(policy {policy}, exit {exit_code})"
        )
        return True

    def _on_backoff_elapsed(self, container_id: str, run_id: int) -> None:
        # Timer thread: spawning may block on the sandbox
        try:
            self._executor.submit(self._restart, container_id, run_id)
        except RuntimeError:
            logger.debug(f"Dropped restart of {container_id} after close")

    def _restart(self, container_id: str, run_id: int) -> None:
        with self._lock:
            self._pending.pop(container_id, None)
        try:
            restarted = self._containers.restart_after_exit(container_id, run_id)
        except EngineError as e:
            logger.error(f"Policy restart of {container_id} failed: {e}")
            self._bus.publish(
                Event(
                    EventType.RESTART_DECLINED,
                    ResourceKind.CONTAINER,
                    container_id,
                    {"reason": "sandbox_failure", "error": str(e), "run_id": run_id},
                )
            )
            return
        if not restarted:
            logger.debug(f"Skipped policy restart of {container_id}: superseded")

    def _reason(self, container: Container, exit_code: int, explicit: bool) -> str:
        kind = container.restart_policy.kind
        if kind == RestartPolicyKind.NEVER:
            return "policy"
        if kind == RestartPolicyKind.UNLESS_STOPPED and explicit:
            return "explicit_stop"
        if kind == RestartPolicyKind.ON_FAILURE and exit_code == 0:
            return "clean_exit"
        return "max_retries"

    def _decline(self, container: Container, event: Event, reason: str) -> None:
        with self._lock:
            self._streaks.pop(container.container_id, None)
        logger.info(f"Not restarting {container.display_name}: {reason}")
        attributes = {
            "reason": reason,
            "exit_code": event.get("exit_code"),
            "run_id": event.get("run_id"),
            "policy": str(container.restart_policy),
        }
        self._bus.publish(
            Event(EventType.RESTART_DECLINED, ResourceKind.CONTAINER, container.container_id, attributes)
        )
        if reason == "max_retries":
            self._bus.publish(
                Event(
                    EventType.RESTART_POLICY_EXHAUSTED,
                    ResourceKind.CONTAINER,
                    container.container_id,
                    {
                        "max_retries": container.restart_policy.max_retries,
                        "failure_count": event.get("failure_count"),
                    },
                )
            )
