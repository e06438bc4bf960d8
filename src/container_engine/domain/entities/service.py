"""Service entities used by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time

from container_engine.domain.entities.container import (
    HealthCheckSpec,
    MountSpec,
    ResourceLimits,
    RestartPolicy,
)
from container_engine.domain.value_objects.identifiers import is_valid_name

# Labels stamped on replica containers
SERVICE_LABEL = "engine.service"
REVISION_LABEL = "engine.revision"


class ServiceState(Enum):
    """Service deployment state."""
    PENDING = "pending"
    DEPLOYING = "deploying"
    READY = "ready"
    UPDATING = "updating"
    UPDATE_FAILED = "update_failed"
    FAILED = "failed"
    REMOVING = "removing"


@dataclass(frozen=True)
class UpdateConfig:
    """Rolling update parameters. Durations are in seconds."""
    parallelism: int = 1
    delay: float = 0.0
    monitor_window: float | None = None  # Defaults to the health check deadline

    def __post_init__(self) -> None:
        if self.parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must be non-negative")
        if self.monitor_window is not None and self.monitor_window <= 0:
            raise ValueError("monitor_window must be positive")


@dataclass
class ServiceSpec:
    """Desired state of a service."""
    name: str
    image: str
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    replicas: int = 1
    networks: list[str] = field(default_factory=list)  # Network names
    volumes: list[MountSpec] = field(default_factory=list)
    health_check: HealthCheckSpec | None = None
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    depends_on: list[str] = field(default_factory=list)
    update_config: UpdateConfig | None = None  # None takes the engine defaults
    min_ready: int = 1
    stop_timeout: float | None = None
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    labels: dict[str, str] = field(default_factory=dict)

    def validation_errors(self) -> list[str]:
        """Collect descriptor problems."""
        errors = []
        if not is_valid_name(self.name):
            errors.append(f"invalid service name: {self.name!r}")
        if not self.image:
            errors.append("image is required")
        if self.replicas < 0:
            errors.append("replicas must be non-negative")
        if self.min_ready < 0:
            errors.append("min_ready must be non-negative")
        if self.name in self.depends_on:
            errors.append(f"service {self.name} depends on itself")
        for mount in self.volumes:
            if not mount.target.startswith("/"):
                errors.append(f"mount target must be absolute: {mount.target!r}")
        return errors

    def rollout_config(self) -> UpdateConfig:
        return self.update_config or UpdateConfig()

    def required_ready(self) -> int:
        """Replicas that must be ready for the service to be ready."""
        return min(max(self.min_ready, 1), self.replicas)

    def template_key(self) -> tuple:
        """Fields whose change requires replacing replicas."""
        return (
            self.image,
            tuple(self.command),
            tuple(sorted(self.env.items())),
            tuple(self.networks),
            tuple(self.volumes),
            self.health_check,
            self.restart_policy,
            (self.limits.cpu_shares, self.limits.memory_limit, self.limits.pids_limit),
            tuple(sorted(self.labels.items())),
        )


@dataclass
class Service:
    """Service record: desired state plus the replicas realizing it."""
    service_id: str
    name: str
    spec: ServiceSpec
    revision: int = 1
    replicas: list[str] = field(default_factory=list)  # Container IDs
    state: ServiceState = ServiceState.PENDING
    next_ordinal: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    version: int = 0


@dataclass
class ServiceStatus:
    """Point-in-time view of a service."""
    name: str
    state: ServiceState
    revision: int
    desired: int
    running: int
    ready: int
    replicas: list[str]

    @property
    def converged(self) -> bool:
        return self.running == self.desired == len(self.replicas)
