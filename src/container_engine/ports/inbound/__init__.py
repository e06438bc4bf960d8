"""Inbound ports - API contracts for the container engine.

Inbound ports define the interfaces that clients and upper layers use
to drive container lifecycle, networks, volumes and services. Errors
raised through these ports are re-exported here.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Iterable, Optional, Protocol, Sequence, runtime_checkable

from container_engine.domain.entities import (
    Container,
    ContainerConfig,
    MountHandle,
    Network,
    NetworkDriver,
    ServiceSpec,
    ServiceStatus,
    Volume,
)
from container_engine.domain.errors import (
    AddressPoolExhaustedError,
    AlreadyBoundError,
    ConflictError,
    CyclicDependencyError,
    EngineError,
    HealthCheckTimeoutError,
    InUseError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    SandboxFailureError,
    StaleError,
)
from container_engine.domain.services.orchestrator import (
    CancellationToken,
    DeploymentPlan,
    RolloutResult,
)
from container_engine.ports.outbound import SignalKind


# =============================================================================
# Container Lifecycle Port
# =============================================================================


@runtime_checkable
class ContainerLifecyclePort(Protocol):
    """Protocol for container lifecycle intents.

    Thread Safety:
        All methods must be thread-safe. Intents on one container are
        serialized; intents on different containers run concurrently.

    Example:
        container = engine.container_create(ContainerConfig(image="app:1"))
        try:
            engine.container_start(container.container_id)
            # ... use container
        finally:
            engine.container_stop(container.container_id)
            engine.container_remove(container.container_id)
    """

    @abstractmethod
    def container_create(self, config: ContainerConfig) -> Container:
        """Create a container in state created.

        Raises:
            ValueError: If the configuration is invalid.
            ConflictError: If the name is taken.
        """
        ...

    @abstractmethod
    def container_start(self, ref: str) -> Container:
        """Start a created or stopped container.

        Raises:
            NotFoundError: If the container does not exist.
            InvalidStateError: If the container is running or paused.
            SandboxFailureError: If the process could not be spawned.
        """
        ...

    @abstractmethod
    def container_stop(self, ref: str, timeout: Optional[float] = None) -> Container:
        """Stop a container, killing it after ``timeout`` seconds."""
        ...

    @abstractmethod
    def container_kill(self, ref: str, signal: SignalKind | str | int = SignalKind.KILL) -> Container:
        """Send a signal to the container's root process."""
        ...

    @abstractmethod
    def container_pause(self, ref: str) -> Container:
        """Freeze a running container."""
        ...

    @abstractmethod
    def container_unpause(self, ref: str) -> Container:
        """Thaw a paused container."""
        ...

    @abstractmethod
    def container_restart(self, ref: str, timeout: Optional[float] = None) -> Container:
        """Stop (if running) and start a container."""
        ...

    @abstractmethod
    def container_remove(self, ref: str, force: bool = False, volumes: bool = False) -> None:
        """Remove a stopped container.

        Raises:
            InvalidStateError: If not stopped and ``force`` is not set.
            ConflictError: If a service owns the container.
        """
        ...

    @abstractmethod
    def container_inspect(self, ref: str) -> Container:
        """Get a container by ID, name or ID prefix."""
        ...

    @abstractmethod
    def container_list(self, all: bool = False) -> list[Container]:
        """List live containers, or every container with ``all``."""
        ...

    @abstractmethod
    def container_wait(self, ref: str, timeout: Optional[float] = None) -> int:
        """Wait for the container's process to exit and return its code."""
        ...


# =============================================================================
# Network Port
# =============================================================================


@runtime_checkable
class NetworkPort(Protocol):
    """Protocol for network intents.

    Thread Safety:
        All methods must be thread-safe.
    """

    @abstractmethod
    def network_create(
        self,
        name: str,
        driver: NetworkDriver | str = NetworkDriver.BRIDGE,
        subnet: Optional[str] = None,
        gateway: Optional[str] = None,
        internal: bool = False,
        labels: Optional[dict[str, str]] = None,
    ) -> Network:
        """Create a network.

        Raises:
            ConflictError: If the name is taken or the subnet overlaps.
        """
        ...

    @abstractmethod
    def network_attach(
        self,
        network_ref: str,
        container_ref: str,
        aliases: Iterable[str] = (),
        address: Optional[str] = None,
    ) -> Optional[str]:
        """Attach a container and return its address on the network."""
        ...

    @abstractmethod
    def network_detach(self, network_ref: str, container_ref: str) -> None:
        """Detach a container, freeing its address."""
        ...

    @abstractmethod
    def network_resolve(self, network_ref: str, name: str, requester: Optional[str] = None) -> str:
        """Resolve a name among the members of one network.

        On a ``none`` network only the requester itself resolves.

        Raises:
            NotFoundError: If no member answers to the name.
        """
        ...

    @abstractmethod
    def network_remove(self, ref: str) -> None:
        """Remove a network with no members.

        Raises:
            InUseError: If containers are attached.
        """
        ...

    @abstractmethod
    def network_list(self) -> list[Network]:
        """List networks."""
        ...


# =============================================================================
# Volume Port
# =============================================================================


@runtime_checkable
class VolumePort(Protocol):
    """Protocol for volume intents.

    Thread Safety:
        All methods must be thread-safe.
    """

    @abstractmethod
    def volume_create(
        self,
        name: Optional[str] = None,
        driver: str = "local",
        labels: Optional[dict[str, str]] = None,
    ) -> Volume:
        """Create a named or anonymous volume."""
        ...

    @abstractmethod
    def volume_bind(
        self,
        volume_ref: str,
        container_ref: str,
        path: str,
        read_only: bool = False,
    ) -> MountHandle:
        """Mount a volume into a container.

        Raises:
            AlreadyBoundError: If already mounted there by the container.
        """
        ...

    @abstractmethod
    def volume_remove(self, ref: str, force: bool = False) -> None:
        """Remove a volume.

        Raises:
            InUseError: If mounted and ``force`` is not set.
        """
        ...

    @abstractmethod
    def volume_list(self) -> list[Volume]:
        """List volumes."""
        ...

    @abstractmethod
    def volume_prune(self, all: bool = False) -> list[str]:
        """Remove unreferenced volumes and return their names."""
        ...


# =============================================================================
# Orchestrator Port
# =============================================================================


@runtime_checkable
class OrchestratorPort(Protocol):
    """Protocol for service intents.

    Thread Safety:
        All methods must be thread-safe. Intents on one service are
        serialized.
    """

    @abstractmethod
    def service_apply(
        self,
        specs: Sequence[ServiceSpec],
        cancel: Optional[CancellationToken] = None,
    ) -> DeploymentPlan:
        """Deploy services in dependency order.

        Raises:
            CyclicDependencyError: If the dependency graph has a cycle.
            HealthCheckTimeoutError: If a service never became ready.
        """
        ...

    @abstractmethod
    def service_scale(
        self,
        name: str,
        replicas: int,
        cancel: Optional[CancellationToken] = None,
        wait: bool = False,
    ) -> ServiceStatus:
        """Change the replica count of a service."""
        ...

    @abstractmethod
    def service_update(
        self,
        spec: ServiceSpec,
        cancel: Optional[CancellationToken] = None,
    ) -> RolloutResult:
        """Roll a service to a new descriptor."""
        ...

    @abstractmethod
    def service_reconcile(self, name: str) -> ServiceStatus:
        """Replace dead replicas and converge to the replica count."""
        ...

    @abstractmethod
    def service_remove(self, name: str) -> None:
        """Retire every replica and delete the service."""
        ...

    @abstractmethod
    def service_status(self, name: str) -> ServiceStatus:
        """Get a point-in-time view of a service."""
        ...


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Ports
    "ContainerLifecyclePort",
    "NetworkPort",
    "VolumePort",
    "OrchestratorPort",
    # Errors
    "EngineError",
    "NotFoundError",
    "InvalidStateError",
    "ConflictError",
    "InUseError",
    "AlreadyBoundError",
    "StaleError",
    "CyclicDependencyError",
    "HealthCheckTimeoutError",
    "SandboxFailureError",
    "PolicyViolationError",
    "AddressPoolExhaustedError",
]
