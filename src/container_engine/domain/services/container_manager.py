"""Container manager service.

Implements the container state machine:

    created --start--> running --pause--> paused
       ^                  |  ^--unpause--'  |
       |             stop/kill/exit    stop/kill/exit
       |                  v                 |
       '---(start)---- stopped <-----------'
                          |
                       remove
                          v
                       removed

Every transition of one container happens under that container's lock
and publishes its event before the lock is released. Process exits are
observed by one watcher thread per running process; the watcher applies
the exit transition under the same lock, so a stop request and a natural
exit can never both record an exit for the same run.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from container_engine.domain.entities import (
    Container,
    ContainerConfig,
    ContainerState,
    Event,
    EventType,
    HealthStatus,
    ResourceKind,
    RestartPolicyKind,
)
from container_engine.domain.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SandboxFailureError,
)
from container_engine.domain.services.event_bus import EventBus
from container_engine.domain.services.locks import KeyedLocks
from container_engine.domain.services.network_manager import NetworkManager
from container_engine.domain.services.resource_store import ResourceStore
from container_engine.domain.services.timer_service import TimerHandle, TimerService
from container_engine.domain.services.volume_manager import VolumeManager
from container_engine.domain.value_objects import create_container_id, short_id
from container_engine.ports.outbound import ProcessSandboxPort, SandboxError, SignalKind

logger = logging.getLogger(__name__)

# Exit code recorded for containers whose process outlived the engine
LOST_PROCESS_EXIT_CODE = 255


@dataclass
class _Runtime:
    """Live process of one run of a container."""
    run_id: int
    pid: int
    exited: threading.Event = field(default_factory=threading.Event)
    exit_code: Optional[int] = None
    kill_timer: Optional[TimerHandle] = None


class ContainerManager:
    """Manages container lifecycle.

    Handles:
    - Container creation with declared mounts and networks
    - Start/stop/kill/pause/unpause/restart through the process sandbox
    - Grace-period enforcement on the timer service
    - Removal with release of volumes and networks
    """

    def __init__(
        self,
        store: ResourceStore,
        bus: EventBus,
        sandbox: ProcessSandboxPort,
        timers: TimerService,
        locks: KeyedLocks,
        networks: NetworkManager,
        volumes: VolumeManager,
        default_stop_timeout: float = 10.0,
        kill_grace: float = 5.0,
        removed_history: int = 1024,
    ) -> None:
        """Initialize container manager.

        Args:
            store: Resource store.
            bus: Event bus.
            sandbox: Process sandbox.
            timers: Timer service for kill deadlines.
            locks: Per-container locks.
            networks: Network manager.
            volumes: Volume manager.
            default_stop_timeout: Grace period of ``stop`` in seconds.
            kill_grace: Seconds to wait for an exit after a forceful kill.
            removed_history: Recently removed IDs for which a repeated
                remove is a no-op.
        """
        self._store = store
        self._bus = bus
        self._sandbox = sandbox
        self._timers = timers
        self._locks = locks
        self._networks = networks
        self._volumes = volumes
        self._default_stop_timeout = default_stop_timeout
        self._kill_grace = kill_grace

        self._guard = threading.Lock()
        self._runtimes: dict[str, _Runtime] = {}
        self._removing: set[str] = set()
        self._removed: set[str] = set()
        self._removed_order: deque[str] = deque()
        self._removed_history = removed_history
        self._sequence = itertools.count(1)
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="container-kill")

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, container_id: str) -> Container:
        """Get a container by exact ID."""
        return self._store.get(ResourceKind.CONTAINER, container_id)

    def find(self, ref: str) -> Container:
        """Get a container by ID, name or ID prefix."""
        return self._store.find(ResourceKind.CONTAINER, ref)

    def list(self, predicate: Optional[Callable[[Container], bool]] = None) -> list[Container]:
        """List containers, oldest first."""
        return self._store.list(ResourceKind.CONTAINER, predicate)

    def is_removing(self, container_id: str) -> bool:
        with self._guard:
            return container_id in self._removing

    def was_removed(self, container_id: str) -> bool:
        with self._guard:
            return container_id in self._removed

    # =========================================================================
    # Transitions
    # =========================================================================

    def create(self, config: ContainerConfig) -> Container:
        """Create a container.

        Declared mounts are bound (creating missing named volumes and a
        fresh anonymous volume per anonymous mount) and declared networks
        attached. On failure everything done so far is undone.

        Args:
            config: Container configuration.

        Returns:
            Created container.

        Raises:
            ValueError: If the configuration is invalid.
            ConflictError: If the name is taken.
        """
        errors = config.validation_errors()
        if errors:
            raise ValueError(f"Invalid container config: {'; '.join(errors)}")

        container = Container(
            container_id=create_container_id(),
            image=config.image,
            command=list(config.command),
            env=dict(config.env),
            name=config.name,
            restart_policy=config.restart_policy,
            limits=config.limits,
            health_check=config.health_check,
            labels=dict(config.labels),
        )
        container_id = container.container_id

        try:
            with self._locks.hold(container_id):
                self._store.create(ResourceKind.CONTAINER, container)
                anonymous: list[str] = []
                try:
                    for mount in config.mounts:
                        if mount.source is None:
                            volume = self._volumes.create_volume()
                            anonymous.append(volume.volume_id)
                            self._volumes.bind(
                                volume.volume_id, container_id, mount.target, mount.read_only
                            )
                        else:
                            self._volumes.bind(
                                mount.source, container_id, mount.target, mount.read_only, create=True
                            )
                    for attachment in config.networks:
                        self._networks.attach(
                            attachment.network, container_id, attachment.aliases, attachment.address
                        )
                except Exception:
                    logger.warning(f"Rolling back creation of {container.display_name}")
                    self._release(container_id)
                    self._store.delete(ResourceKind.CONTAINER, container_id, force=True)
                    for volume_id in anonymous:
                        self._volumes.remove_if_anonymous(volume_id)
                    raise

                logger.info(f"Created container {container.display_name} from {config.image}")
                self._publish(
                    EventType.CONTAINER_CREATED,
                    container_id,
                    name=container.name,
                    image=container.image,
                )
                return self.get(container_id)
        except Exception:
            # Never existed; forget its lock
            self._locks.discard(container_id)
            raise

    def start(self, ref: str) -> Container:
        """Start a created or stopped container.

        Raises:
            InvalidStateError: If the container is running, paused or
                being removed.
            SandboxFailureError: If the sandbox could not spawn it.
        """
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)
        with self._locks.hold(container_id):
            container = self.get(container_id)
            if self.is_removing(container_id):
                raise InvalidStateError(container_id, "removing", "start")
            if container.state not in (ContainerState.CREATED, ContainerState.STOPPED):
                raise InvalidStateError(container_id, container.state.value, "start")
            self._spawn(container)
            return self.get(container_id)

    def stop(self, ref: str, timeout: Optional[float] = None) -> Container:
        """Stop a container, killing it if it outlives the grace period.

        A paused container is thawed first. Stopping a stopped container
        does nothing.

        Args:
            ref: Container ID, name or ID prefix.
            timeout: Grace period in seconds; 0 kills immediately.

        Returns:
            The stopped container.

        Raises:
            InvalidStateError: If the container was never started.
            SandboxFailureError: If the process survived the forceful kill.
        """
        if timeout is None:
            timeout = self._default_stop_timeout
        if timeout < 0:
            raise ValueError("timeout must be non-negative")
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)

        with self._locks.hold(container_id):
            container = self.get(container_id)
            if container.state == ContainerState.STOPPED:
                return container
            if not container.is_running():
                raise InvalidStateError(container_id, container.state.value, "stop")

            runtime = self._runtimes[container_id]
            self._mark_explicit_stop(container_id)
            if container.state == ContainerState.PAUSED:
                self._thaw(container)
            if timeout == 0:
                self._deliver(container_id, runtime, SignalKind.KILL)
            else:
                self._deliver(container_id, runtime, SignalKind.TERM)
                if not runtime.exited.is_set():
                    runtime.kill_timer = self._timers.call_later(
                        timeout, self._on_kill_deadline, container_id, runtime.run_id
                    )
            logger.info(f"Stopping {container.display_name} (grace {timeout}s)")

        self._await_exit(container_id, runtime, timeout + self._kill_grace)
        return self.get(container_id)

    def kill(self, ref: str, signal: SignalKind | str | int = SignalKind.KILL) -> Container:
        """Send a signal to a container's root process.

        ``KILL`` waits for the exit. Other signals return once delivered;
        a paused container is thawed so it can handle them. Only signals
        that terminate by default count as an explicit stop.

        Raises:
            InvalidStateError: If the container is not running or paused.
            SandboxFailureError: If delivery failed or the process survived
                a forceful kill.
        """
        signal = SignalKind.parse(signal)
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)

        with self._locks.hold(container_id):
            container = self.get(container_id)
            if not container.is_running():
                raise InvalidStateError(container_id, container.state.value, "kill")
            runtime = self._runtimes[container_id]
            if signal.ends_process:
                self._mark_explicit_stop(container_id)
            if container.state == ContainerState.PAUSED and not signal.is_forceful:
                self._thaw(container)
            self._deliver(container_id, runtime, signal)
            logger.info(f"Sent SIG{signal.name} to {container.display_name}")

        if signal.is_forceful:
            self._await_exit(container_id, runtime, self._kill_grace)
        return self.get(container_id)

    def pause(self, ref: str) -> Container:
        """Freeze a running container.

        Raises:
            InvalidStateError: If the container is not running.
        """
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)
        with self._locks.hold(container_id):
            container = self.get(container_id)
            if container.state != ContainerState.RUNNING:
                raise InvalidStateError(container_id, container.state.value, "pause")
            try:
                self._sandbox.freeze(container.pid)
            except SandboxError as e:
                raise self._sandbox_failure(container_id, f"freeze failed: {e}") from e
            self._store.mutate(ResourceKind.CONTAINER, container_id, lambda c: c.mark_paused())
            logger.info(f"Paused {container.display_name}")
            self._publish(EventType.CONTAINER_PAUSED, container_id, run_id=container.run_id)
            return self.get(container_id)

    def unpause(self, ref: str) -> Container:
        """Thaw a paused container.

        Raises:
            InvalidStateError: If the container is not paused.
        """
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)
        with self._locks.hold(container_id):
            container = self.get(container_id)
            if container.state != ContainerState.PAUSED:
                raise InvalidStateError(container_id, container.state.value, "unpause")
            self._thaw(container)
            logger.info(f"Unpaused {container.display_name}")
            return self.get(container_id)

    def restart(self, ref: str, timeout: Optional[float] = None) -> Container:
        """Stop the container if it is running, then start it again."""
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)
        if self.get(container_id).is_running():
            self.stop(container_id, timeout)
        with self._locks.hold(container_id):
            container = self.get(container_id)
            if container.state == ContainerState.RUNNING:
                # Already brought back by its restart policy
                return container
            return self.start(container_id)

    def remove(self, ref: str, force: bool = False, volumes: bool = False) -> None:
        """Remove a container.

        Args:
            ref: Container ID, name or ID prefix.
            force: Kill a live container, or remove one never started.
            volumes: Also remove the anonymous volumes it held.

        Raises:
            InvalidStateError: If the container is not stopped and
                ``force`` is not set.
            ConflictError: If a service still owns the container.
        """
        if self.was_removed(ref):
            return
        try:
            container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)
        except NotFoundError:
            if self.was_removed(ref):
                return
            raise

        with self._locks.hold(container_id):
            try:
                container = self.get(container_id)
            except NotFoundError:
                if self.was_removed(container_id):
                    return
                raise
            owners = self._store.list(ResourceKind.SERVICE, lambda s: container_id in s.replicas)
            if owners:
                raise ConflictError(
                    f"Container {container.display_name} is owned by service {owners[0].name}"
                )
            if container.state != ContainerState.STOPPED and not force:
                raise InvalidStateError(container_id, container.state.value, "remove")
            with self._guard:
                self._removing.add(container_id)
            runtime = self._runtimes.get(container_id)
            if runtime is not None:
                self._mark_explicit_stop(container_id)
                self._deliver(container_id, runtime, SignalKind.KILL)

        try:
            if runtime is not None:
                self._await_exit(container_id, runtime, self._kill_grace)
            with self._locks.hold(container_id):
                container = self.get(container_id)
                held = [m.volume_id for m in container.mounts]
                self._release(container_id)
                self._store.delete(ResourceKind.CONTAINER, container_id)
                container.mark_removed()
                self._remember_removed(container_id)
                logger.info(f"Removed container {container.display_name}")
                self._publish(EventType.CONTAINER_REMOVED, container_id, name=container.name)
        finally:
            with self._guard:
                self._removing.discard(container_id)
        self._locks.discard(container_id)

        if volumes:
            for volume_id in held:
                self._volumes.remove_if_anonymous(volume_id)

    def wait(self, ref: str, timeout: Optional[float] = None) -> int:
        """Wait for a container's process to exit.

        Returns:
            Exit code of the current (or last) run.

        Raises:
            InvalidStateError: If the container was never started.
            TimeoutError: If it is still running after ``timeout`` seconds.
        """
        container_id = self._store.resolve_id(ResourceKind.CONTAINER, ref)
        with self._locks.hold(container_id):
            container = self.get(container_id)
            runtime = self._runtimes.get(container_id)
            if runtime is None:
                if container.state == ContainerState.STOPPED:
                    return container.exit_code
                raise InvalidStateError(container_id, container.state.value, "wait")
        if not runtime.exited.wait(timeout):
            raise TimeoutError(f"Container {container.display_name} still running after {timeout}s")
        return runtime.exit_code

    # =========================================================================
    # Hooks for the restart manager and health monitor
    # =========================================================================

    def restart_after_exit(self, container_id: str, run_id: int) -> bool:
        """Restart a container by policy if it is still in the exited run.

        Returns:
            True if the container was started again.
        """
        with self._locks.hold(container_id):
            if self.is_removing(container_id):
                return False
            try:
                container = self.get(container_id)
            except NotFoundError:
                return False
            if container.run_id != run_id or container.state != ContainerState.STOPPED:
                return False
            self._publish(
                EventType.CONTAINER_RESTARTING,
                container_id,
                run_id=run_id,
                restart_count=container.restart_count + 1,
            )
            self._spawn(container, restart=True)
            return True

    def set_health(self, container_id: str, run_id: int, status: HealthStatus) -> bool:
        """Record a health transition for the given run.

        Returns:
            True if the status changed.
        """
        with self._locks.hold(container_id):
            try:
                container = self.get(container_id)
            except NotFoundError:
                return False
            if container.run_id != run_id or not container.is_running():
                return False
            if container.health == status:
                return False
            previous = container.health

            def apply(record: Container) -> None:
                record.health = status

            self._store.mutate(ResourceKind.CONTAINER, container_id, apply)
            logger.info(f"Container {container.display_name} is {status.value}")
            self._publish(
                EventType.CONTAINER_HEALTH,
                container_id,
                status=status.value,
                previous=previous.value,
                run_id=run_id,
            )
            return True

    def recover(self) -> list[str]:
        """Settle records left behind by a previous engine process.

        Containers recorded as running or paused lost their process with
        the engine; they are marked stopped with exit code 255.

        Returns:
            IDs of the recovered containers whose restart policy asks for
            a restart after an engine restart.
        """
        highest = 0
        to_restart = []
        for container in self.list():
            highest = max(highest, container.start_sequence)
            if not container.is_running():
                continue

            def settle(record: Container) -> None:
                record.state = ContainerState.STOPPED
                record.exit_code = LOST_PROCESS_EXIT_CODE
                record.finished_at = time.time()
                record.pid = None
                record.health = HealthStatus.NONE

            self._store.mutate(ResourceKind.CONTAINER, container.container_id, settle)
            kind = container.restart_policy.kind
            if kind == RestartPolicyKind.ALWAYS or (
                kind == RestartPolicyKind.UNLESS_STOPPED and not container.explicit_stop
            ):
                to_restart.append(container.container_id)
            logger.warning(f"Container {container.display_name} lost its process; marked stopped")
        self._sequence = itertools.count(highest + 1)
        return to_restart

    def shutdown(self, timeout: Optional[float] = None, stop_containers: bool = True) -> None:
        """Release worker threads, stopping every live container first.

        Args:
            timeout: Grace period for each stop.
            stop_containers: Leave live processes (and their records)
                alone when False; exits observed afterwards are ignored.
        """
        if stop_containers:
            for container in self.list(lambda c: c.is_running()):
                try:
                    self.stop(container.container_id, timeout)
                except (InvalidStateError, NotFoundError, SandboxFailureError) as e:
                    logger.warning(f"Failed to stop {container.display_name} on shutdown: {e}")
        with self._guard:
            self._closed = True
        self._executor.shutdown(wait=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _spawn(self, container: Container, restart: bool = False) -> None:
        # Caller holds the container lock
        container_id = container.container_id
        try:
            pid = self._sandbox.spawn(container.image, container.command, container.env, container.limits)
        except SandboxError as e:
            raise self._sandbox_failure(container_id, f"spawn failed: {e}") from e

        try:
            for handle in self._networks.namespace_handles(container):
                self._sandbox.attach_namespace(pid, handle)
        except SandboxError as e:
            self._executor.submit(self._reap, pid)
            raise self._sandbox_failure(container_id, f"network attach failed: {e}") from e

        run_id = container.run_id + 1
        start_sequence = next(self._sequence)

        def run(record: Container) -> None:
            record.mark_running(pid, run_id, start_sequence)
            record.explicit_stop = False
            if restart:
                record.restart_count += 1

        container = self._store.mutate(ResourceKind.CONTAINER, container_id, run)
        runtime = _Runtime(run_id=run_id, pid=pid)
        with self._guard:
            self._runtimes[container_id] = runtime
        watcher = threading.Thread(
            target=self._watch,
            args=(container_id, run_id, pid),
            name=f"watch-{short_id(container_id)}-{run_id}",
            daemon=True,
        )
        watcher.start()

        logger.info(f"Started {container.display_name} (pid {pid}, run {run_id})")
        self._publish(
            EventType.CONTAINER_STARTED,
            container_id,
            pid=pid,
            run_id=run_id,
            start_sequence=start_sequence,
            restart_count=container.restart_count,
            restart=restart,
        )

    def _watch(self, container_id: str, run_id: int, pid: int) -> None:
        try:
            exit_code = self._sandbox.wait(pid)
        except SandboxError as e:
            logger.error(f"Lost track of pid {pid} of {container_id}: {e}")
            exit_code = LOST_PROCESS_EXIT_CODE
        self._on_process_exit(container_id, run_id, exit_code)

    def _on_process_exit(self, container_id: str, run_id: int, exit_code: int) -> None:
        with self._locks.hold(container_id):
            with self._guard:
                runtime = self._runtimes.get(container_id)
                if runtime is None or runtime.run_id != run_id:
                    return
                del self._runtimes[container_id]
                if self._closed:
                    runtime.exit_code = exit_code
                    runtime.exited.set()
                    return
            if runtime.kill_timer is not None:
                runtime.kill_timer.cancel()

            def exit_run(record: Container) -> None:
                if record.run_id == run_id and record.is_running():
                    record.mark_exited(exit_code)

            try:
                container = self._store.mutate(ResourceKind.CONTAINER, container_id, exit_run)
            except NotFoundError:
                container = None
            runtime.exit_code = exit_code

            if container is not None:
                logger.info(f"Container {container.display_name} exited with code {exit_code}")
                self._publish(
                    EventType.CONTAINER_EXITED,
                    container_id,
                    exit_code=exit_code,
                    run_id=run_id,
                    explicit=container.explicit_stop,
                    failure_count=container.failure_count,
                    restart_count=container.restart_count,
                    removing=self.is_removing(container_id),
                )
            runtime.exited.set()

    def _on_kill_deadline(self, container_id: str, run_id: int) -> None:
        # Timer thread: never block here
        try:
            self._executor.submit(self._force_kill, container_id, run_id)
        except RuntimeError:
            logger.debug(f"Kill deadline of {short_id(container_id)} fired after shutdown")

    def _force_kill(self, container_id: str, run_id: int) -> None:
        with self._locks.hold(container_id):
            with self._guard:
                runtime = self._runtimes.get(container_id)
            if runtime is None or runtime.run_id != run_id or runtime.exited.is_set():
                return
            logger.warning(f"Grace period expired for {short_id(container_id)}; killing")
            try:
                self._sandbox.signal(runtime.pid, SignalKind.KILL)
            except SandboxError as e:
                logger.error(f"Forceful kill of {short_id(container_id)} failed: {e}")
                self._publish(EventType.SANDBOX_FAILURE, container_id, reason=str(e), action="kill")

    def _deliver(self, container_id: str, runtime: _Runtime, signal: SignalKind) -> None:
        try:
            self._sandbox.signal(runtime.pid, signal)
        except SandboxError as e:
            raise self._sandbox_failure(container_id, f"SIG{signal.name} failed: {e}") from e

    def _await_exit(self, container_id: str, runtime: _Runtime, timeout: float) -> None:
        if not runtime.exited.wait(timeout):
            raise self._sandbox_failure(
                container_id, f"process {runtime.pid} did not exit within {timeout:.1f}s"
            )

    def _thaw(self, container: Container) -> None:
        try:
            self._sandbox.unfreeze(container.pid)
        except SandboxError as e:
            raise self._sandbox_failure(container.container_id, f"unfreeze failed: {e}") from e
        self._store.mutate(ResourceKind.CONTAINER, container.container_id, lambda c: c.mark_unpaused())
        self._publish(EventType.CONTAINER_UNPAUSED, container.container_id, run_id=container.run_id)

    def _remember_removed(self, container_id: str) -> None:
        with self._guard:
            self._removed.add(container_id)
            self._removed_order.append(container_id)
            while len(self._removed_order) > self._removed_history:
                self._removed.discard(self._removed_order.popleft())

    def _mark_explicit_stop(self, container_id: str) -> None:
        def mark(record: Container) -> None:
            record.explicit_stop = True

        self._store.mutate(ResourceKind.CONTAINER, container_id, mark)

    def _release(self, container_id: str) -> None:
        self._volumes.unbind(container_id)
        self._networks.detach_all(container_id)

    def _reap(self, pid: int) -> None:
        try:
            self._sandbox.signal(pid, SignalKind.KILL)
            self._sandbox.wait(pid)
        except SandboxError as e:
            logger.error(f"Failed to reap pid {pid}: {e}")

    def _sandbox_failure(self, container_id: str, reason: str) -> SandboxFailureError:
        def record_error(record: Container) -> None:
            record.error_message = reason

        try:
            self._store.mutate(ResourceKind.CONTAINER, container_id, record_error)
        except NotFoundError:
            pass
        logger.error(f"Sandbox failure for {short_id(container_id)}: {reason}")
        self._publish(EventType.SANDBOX_FAILURE, container_id, reason=reason)
        return SandboxFailureError(container_id, reason)

    def _publish(self, event_type: EventType, container_id: str, **attributes) -> None:
        self._bus.publish(Event(event_type, ResourceKind.CONTAINER, container_id, attributes))
