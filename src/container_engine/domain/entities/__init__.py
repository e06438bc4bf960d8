"""Domain entities for the container engine.

Exports:
    Container:
        - Container, ContainerConfig, ContainerState, HealthStatus
        - RestartPolicy, RestartPolicyKind, HealthCheckSpec, ResourceLimits
        - VolumeBinding, MountSpec, NetworkAttachment

    Network:
        - Network, NetworkDriver, Endpoint

    Volume:
        - Volume, Mount, MountHandle

    Service:
        - Service, ServiceSpec, ServiceState, ServiceStatus, UpdateConfig

    Events:
        - Event, EventType, ResourceKind
"""

from container_engine.domain.entities.container import (
    Container,
    ContainerConfig,
    ContainerState,
    HealthCheckSpec,
    HealthStatus,
    MountSpec,
    NetworkAttachment,
    ResourceLimits,
    RestartPolicy,
    RestartPolicyKind,
    VolumeBinding,
)
from container_engine.domain.entities.events import Event, EventType, ResourceKind
from container_engine.domain.entities.network import (
    LOOPBACK_ADDRESS,
    Endpoint,
    Network,
    NetworkDriver,
)
from container_engine.domain.entities.service import (
    REVISION_LABEL,
    SERVICE_LABEL,
    Service,
    ServiceSpec,
    ServiceState,
    ServiceStatus,
    UpdateConfig,
)
from container_engine.domain.entities.volume import Mount, MountHandle, Volume

# Record type held by the resource store for each kind
RECORD_TYPES = {
    ResourceKind.CONTAINER: Container,
    ResourceKind.NETWORK: Network,
    ResourceKind.VOLUME: Volume,
    ResourceKind.SERVICE: Service,
}

__all__ = [
    # Container
    "Container",
    "ContainerConfig",
    "ContainerState",
    "HealthCheckSpec",
    "HealthStatus",
    "MountSpec",
    "NetworkAttachment",
    "ResourceLimits",
    "RestartPolicy",
    "RestartPolicyKind",
    "VolumeBinding",
    # Network
    "LOOPBACK_ADDRESS",
    "Endpoint",
    "Network",
    "NetworkDriver",
    # Volume
    "Mount",
    "MountHandle",
    "Volume",
    # Service
    "REVISION_LABEL",
    "SERVICE_LABEL",
    "Service",
    "ServiceSpec",
    "ServiceState",
    "ServiceStatus",
    "UpdateConfig",
    # Events
    "Event",
    "EventType",
    "ResourceKind",
    "RECORD_TYPES",
]
