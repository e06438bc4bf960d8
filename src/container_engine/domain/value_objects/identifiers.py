"""Container engine value objects."""

import re
import secrets
from typing import NewType

# Type-safe identifiers
ContainerId = NewType("ContainerId", str)
NetworkId = NewType("NetworkId", str)
VolumeId = NewType("VolumeId", str)
ServiceId = NewType("ServiceId", str)

SHORT_ID_LENGTH = 12

# Names shared by containers, networks, volumes and services
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def generate_id() -> str:
    """Generate a 64 character hex identifier.

    Returns:
        Random identifier.
    """
    return secrets.token_hex(32)


def create_container_id() -> ContainerId:
    """Create a container ID."""
    return ContainerId(generate_id())


def create_network_id() -> NetworkId:
    """Create a network ID."""
    return NetworkId(generate_id())


def create_volume_id() -> VolumeId:
    """Create a volume ID."""
    return VolumeId(generate_id())


def create_service_id() -> ServiceId:
    """Create a service ID."""
    return ServiceId(generate_id())


def short_id(resource_id: str) -> str:
    """Truncate an identifier for display.

    Args:
        resource_id: Full identifier.

    Returns:
        First 12 characters.
    """
    return resource_id[:SHORT_ID_LENGTH]


def is_valid_name(name: str) -> bool:
    """Check a resource name against the allowed pattern.

    Args:
        name: Candidate name.

    Returns:
        True if valid.
    """
    return bool(NAME_PATTERN.match(name))
