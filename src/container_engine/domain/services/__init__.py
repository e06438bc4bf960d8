"""Domain services for the container engine."""

from container_engine.domain.services.container_manager import ContainerManager
from container_engine.domain.services.event_bus import EventBus, Subscription
from container_engine.domain.services.health_monitor import HealthMonitor
from container_engine.domain.services.locks import KeyedLocks
from container_engine.domain.services.network_manager import NetworkManager
from container_engine.domain.services.orchestrator import (
    CancellationToken,
    DeploymentPlan,
    Orchestrator,
    RolloutResult,
    RolloutStatus,
)
from container_engine.domain.services.resource_store import ResourceStore
from container_engine.domain.services.restart_manager import RestartManager
from container_engine.domain.services.timer_service import TimerHandle, TimerService
from container_engine.domain.services.volume_manager import VolumeManager

__all__ = [
    "CancellationToken",
    "ContainerManager",
    "DeploymentPlan",
    "EventBus",
    "HealthMonitor",
    "KeyedLocks",
    "NetworkManager",
    "Orchestrator",
    "ResourceStore",
    "RestartManager",
    "RolloutResult",
    "RolloutStatus",
    "Subscription",
    "TimerHandle",
    "TimerService",
    "VolumeManager",
]
