"""Container entity and the policies attached to it."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time

from container_engine.domain.errors import InvalidStateError
from container_engine.domain.value_objects.identifiers import is_valid_name, short_id


class ContainerState(Enum):
    """Container lifecycle state."""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    REMOVED = "removed"


class HealthStatus(Enum):
    """Health of a running container with a health check."""
    NONE = "none"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RestartPolicyKind(Enum):
    """Restart policy variants."""
    NEVER = "no"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"
    UNLESS_STOPPED = "unless-stopped"


@dataclass(frozen=True)
class RestartPolicy:
    """Restart policy with an optional retry ceiling."""
    kind: RestartPolicyKind = RestartPolicyKind.NEVER
    max_retries: int = 0  # Only meaningful for ON_FAILURE

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.max_retries and self.kind != RestartPolicyKind.ON_FAILURE:
            raise ValueError(
                f"max_retries cannot be used with restart policy '{self.kind.value}'"
            )

    @classmethod
    def never(cls) -> RestartPolicy:
        return cls(RestartPolicyKind.NEVER)

    @classmethod
    def on_failure(cls, max_retries: int = 0) -> RestartPolicy:
        return cls(RestartPolicyKind.ON_FAILURE, max_retries)

    @classmethod
    def always(cls) -> RestartPolicy:
        return cls(RestartPolicyKind.ALWAYS)

    @classmethod
    def unless_stopped(cls) -> RestartPolicy:
        return cls(RestartPolicyKind.UNLESS_STOPPED)

    @classmethod
    def parse(cls, value: str) -> RestartPolicy:
        """Parse the string form, e.g. ``on-failure:3``.

        Args:
            value: Policy string.

        Returns:
            Parsed policy.

        Raises:
            ValueError: If the string is not a known policy.
        """
        name, _, retries = value.strip().partition(":")
        try:
            kind = RestartPolicyKind(name or "no")
        except ValueError:
            raise ValueError(f"Unknown restart policy: {value}") from None
        if retries:
            if not retries.isdigit():
                raise ValueError(f"Invalid retry count in restart policy: {value}")
            return cls(kind, int(retries))
        return cls(kind)

    def should_restart(self, exit_code: int, explicit_stop: bool, failure_count: int) -> bool:
        """Decide whether an exited container is restarted.

        Args:
            exit_code: Exit code of the run that just ended.
            explicit_stop: Whether the exit was caused by a stop/kill intent.
            failure_count: Consecutive non-zero exits, including this one.

        Returns:
            True if the container should be restarted.
        """
        if self.kind == RestartPolicyKind.ALWAYS:
            return True
        if self.kind == RestartPolicyKind.UNLESS_STOPPED:
            return not explicit_stop
        if self.kind == RestartPolicyKind.ON_FAILURE:
            return exit_code != 0 and failure_count <= self.max_retries
        return False

    def __str__(self) -> str:
        if self.kind == RestartPolicyKind.ON_FAILURE and self.max_retries:
            return f"{self.kind.value}:{self.max_retries}"
        return self.kind.value


@dataclass(frozen=True)
class HealthCheckSpec:
    """Health probe definition. Durations are in seconds."""
    command: tuple[str, ...] = ()
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3  # Consecutive results needed to change status
    start_period: float = 0.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retries < 1:
            raise ValueError("retries must be at least 1")
        if self.start_period < 0:
            raise ValueError("start_period must be non-negative")

    def ready_deadline(self) -> float:
        """Worst-case seconds before a healthy replica reports healthy."""
        return self.start_period + self.interval * self.retries + self.timeout


@dataclass
class ResourceLimits:
    """Resource limits for a container."""
    cpu_shares: int = 1024  # Relative CPU weight
    memory_limit: int | None = None  # Bytes
    pids_limit: int | None = None  # Max processes

    def is_valid(self) -> bool:
        """Validate resource limits.

        Returns:
            True if valid.
        """
        if self.cpu_shares < 2:
            return False
        if self.memory_limit is not None and self.memory_limit < 6 * 1024 * 1024:
            return False  # Less than 6MB
        if self.pids_limit is not None and self.pids_limit < 1:
            return False
        return True


@dataclass(frozen=True)
class VolumeBinding:
    """A volume mounted into a container."""
    volume_id: str
    container_path: str
    read_only: bool = False


@dataclass
class Container:
    """Container entity."""
    container_id: str
    image: str
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    state: ContainerState = ContainerState.CREATED
    exit_code: int | None = None
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    health_check: HealthCheckSpec | None = None
    health: HealthStatus = HealthStatus.NONE
    labels: dict[str, str] = field(default_factory=dict)
    networks: set[str] = field(default_factory=set)
    mounts: list[VolumeBinding] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    pid: int | None = None  # Root process of the sandbox
    run_id: int = 0  # Incremented on every spawn
    start_sequence: int = 0  # Engine-wide order of starts, 0 if never started
    restart_count: int = 0
    failure_count: int = 0  # Consecutive non-zero exits
    explicit_stop: bool = False
    error_message: str = ""
    version: int = 0

    @property
    def display_name(self) -> str:
        return self.name or short_id(self.container_id)

    def mark_running(self, pid: int, run_id: int, start_sequence: int) -> None:
        """Mark container as running.

        Args:
            pid: Sandbox root process ID.
            run_id: Run generation.
            start_sequence: Engine-wide start order.
        """
        if self.state not in (ContainerState.CREATED, ContainerState.STOPPED):
            raise InvalidStateError(self.container_id, self.state.value, "start")
        self.state = ContainerState.RUNNING
        self.pid = pid
        self.run_id = run_id
        self.start_sequence = start_sequence
        self.started_at = time.time()
        self.finished_at = None
        self.exit_code = None
        self.error_message = ""
        self.health = HealthStatus.STARTING if self.health_check else HealthStatus.NONE

    def mark_paused(self) -> None:
        """Mark container as paused."""
        if self.state != ContainerState.RUNNING:
            raise InvalidStateError(self.container_id, self.state.value, "pause")
        self.state = ContainerState.PAUSED

    def mark_unpaused(self) -> None:
        """Mark container as running again after a pause."""
        if self.state != ContainerState.PAUSED:
            raise InvalidStateError(self.container_id, self.state.value, "unpause")
        self.state = ContainerState.RUNNING

    def mark_exited(self, exit_code: int) -> None:
        """Record a process exit.

        Args:
            exit_code: Exit code of the root process.
        """
        if self.state not in (ContainerState.RUNNING, ContainerState.PAUSED):
            raise InvalidStateError(self.container_id, self.state.value, "exit")
        self.state = ContainerState.STOPPED
        self.exit_code = exit_code
        self.finished_at = time.time()
        self.pid = None
        if exit_code == 0:
            self.failure_count = 0
        else:
            self.failure_count += 1

    def mark_removed(self) -> None:
        """Mark container as removed."""
        if self.state in (ContainerState.RUNNING, ContainerState.PAUSED):
            raise InvalidStateError(self.container_id, self.state.value, "remove")
        self.state = ContainerState.REMOVED

    def is_running(self) -> bool:
        """Check if the process tree is alive (running or frozen)."""
        return self.state in (ContainerState.RUNNING, ContainerState.PAUSED)

    def is_ready(self) -> bool:
        """Check if container is running and passing its health check."""
        if self.state != ContainerState.RUNNING:
            return False
        return self.health_check is None or self.health == HealthStatus.HEALTHY

    def has_mount(self, volume_id: str, container_path: str) -> bool:
        return any(
            m.volume_id == volume_id and m.container_path == container_path
            for m in self.mounts
        )

    def get_uptime_seconds(self) -> float:
        """Get container uptime in seconds.

        Returns:
            Uptime seconds.
        """
        if not self.started_at:
            return 0
        end = self.finished_at or time.time()
        return end - self.started_at


@dataclass(frozen=True)
class MountSpec:
    """Volume mount requested at create time. ``source=None`` is anonymous."""
    target: str
    source: str | None = None
    read_only: bool = False


@dataclass(frozen=True)
class NetworkAttachment:
    """Network membership requested at create time."""
    network: str
    aliases: tuple[str, ...] = ()
    address: str | None = None


@dataclass
class ContainerConfig:
    """Configuration for creating a container."""
    image: str
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    health_check: HealthCheckSpec | None = None
    labels: dict[str, str] = field(default_factory=dict)
    mounts: list[MountSpec] = field(default_factory=list)
    networks: list[NetworkAttachment] = field(default_factory=list)

    def validation_errors(self) -> list[str]:
        """Collect configuration problems.

        Returns:
            Human readable problems, empty if valid.
        """
        errors = []
        if not self.image:
            errors.append("image is required")
        if self.name is not None and not is_valid_name(self.name):
            errors.append(f"invalid container name: {self.name!r}")
        for key in self.env:
            if not key or "=" in key:
                errors.append(f"invalid environment key: {key!r}")
        if not self.limits.is_valid():
            errors.append("invalid resource limits")
        targets = [m.target for m in self.mounts]
        for target in targets:
            if not target.startswith("/"):
                errors.append(f"mount target must be absolute: {target!r}")
        if len(set(targets)) != len(targets):
            errors.append("duplicate mount target")
        return errors

    def validate(self) -> bool:
        """Validate configuration.

        Returns:
            True if valid.
        """
        return not self.validation_errors()
