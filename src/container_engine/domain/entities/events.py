"""Engine events published on the event bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any


class ResourceKind(Enum):
    """Kinds of records held by the resource store."""
    CONTAINER = "container"
    NETWORK = "network"
    VOLUME = "volume"
    SERVICE = "service"


class EventType(Enum):
    """Typed engine events."""
    # Container lifecycle
    CONTAINER_CREATED = "container.created"
    CONTAINER_STARTED = "container.started"
    CONTAINER_PAUSED = "container.paused"
    CONTAINER_UNPAUSED = "container.unpaused"
    CONTAINER_EXITED = "container.exited"
    CONTAINER_REMOVED = "container.removed"
    CONTAINER_RESTARTING = "container.restarting"
    CONTAINER_HEALTH = "container.health_status"
    SANDBOX_FAILURE = "container.sandbox_failure"
    RESTART_DECLINED = "container.restart_declined"
    RESTART_POLICY_EXHAUSTED = "container.restart_policy_exhausted"
    # Networks
    NETWORK_CREATED = "network.created"
    NETWORK_REMOVED = "network.removed"
    NETWORK_CONNECTED = "network.connected"
    NETWORK_DISCONNECTED = "network.disconnected"
    # Volumes
    VOLUME_CREATED = "volume.created"
    VOLUME_REMOVED = "volume.removed"
    VOLUME_MOUNTED = "volume.mounted"
    VOLUME_UNMOUNTED = "volume.unmounted"
    # Services
    SERVICE_CREATED = "service.created"
    SERVICE_READY = "service.ready"
    SERVICE_FAILED = "service.failed"
    SERVICE_SCALED = "service.scaled"
    SERVICE_REMOVED = "service.removed"
    ROLLOUT_BATCH = "service.rollout_batch"
    ROLLOUT_COMPLETED = "service.rollout_completed"
    ROLLOUT_ABORTED = "service.rollout_aborted"


@dataclass(frozen=True)
class Event:
    """An engine event.

    ``sequence`` is assigned by the bus at publish time and is strictly
    increasing across all events.
    """
    type: EventType
    kind: ResourceKind
    subject_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    sequence: int = 0

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)
