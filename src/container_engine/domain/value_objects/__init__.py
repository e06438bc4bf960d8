"""Value objects for the container engine."""

from container_engine.domain.value_objects.identifiers import (
    SHORT_ID_LENGTH,
    ContainerId,
    NetworkId,
    ServiceId,
    VolumeId,
    create_container_id,
    create_network_id,
    create_service_id,
    create_volume_id,
    generate_id,
    is_valid_name,
    short_id,
)

__all__ = [
    "SHORT_ID_LENGTH",
    "ContainerId",
    "NetworkId",
    "ServiceId",
    "VolumeId",
    "create_container_id",
    "create_network_id",
    "create_service_id",
    "create_volume_id",
    "generate_id",
    "is_valid_name",
    "short_id",
]
