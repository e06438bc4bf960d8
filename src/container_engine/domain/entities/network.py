"""Network entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time

LOOPBACK_ADDRESS = "127.0.0.1"


class NetworkDriver(Enum):
    """Network driver."""
    BRIDGE = "bridge"
    HOST = "host"
    NONE = "none"
    OVERLAY = "overlay"
    INTERNAL = "internal"

    @property
    def allocates_addresses(self) -> bool:
        """Whether members get an address from the network's subnet."""
        return self in (NetworkDriver.BRIDGE, NetworkDriver.OVERLAY, NetworkDriver.INTERNAL)


@dataclass
class Endpoint:
    """A container's membership in one network."""
    container_id: str
    address: str | None = None
    aliases: list[str] = field(default_factory=list)
    container_name: str | None = None
    attached_at: float = field(default_factory=time.time)

    def answers_to(self, name: str) -> bool:
        """Check if this endpoint resolves for a name or alias."""
        return name in self.aliases or (
            self.container_name is not None and name == self.container_name
        )


@dataclass
class Network:
    """Network entity."""
    network_id: str
    name: str
    driver: NetworkDriver = NetworkDriver.BRIDGE
    subnet: str | None = None
    gateway: str | None = None
    internal: bool = False
    uplink: bool = False  # Default route to the external uplink
    labels: dict[str, str] = field(default_factory=dict)
    members: dict[str, Endpoint] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    version: int = 0

    def has_member(self, container_id: str) -> bool:
        return container_id in self.members

    def allocated_addresses(self) -> set[str]:
        """Addresses currently held by members."""
        return {m.address for m in self.members.values() if m.address}

    def endpoints_for(self, name: str) -> list[Endpoint]:
        """Find members answering to a name, alias or container ID.

        Exact container IDs and names win over aliases; a unique ID prefix
        is accepted last. Results are ordered by attach time.

        Args:
            name: Name, alias, full ID or ID prefix.

        Returns:
            Matching endpoints, possibly empty.
        """
        if name in self.members:
            return [self.members[name]]
        ordered = sorted(self.members.values(), key=lambda e: e.attached_at)
        by_name = [e for e in ordered if e.container_name == name]
        if by_name:
            return by_name
        by_alias = [e for e in ordered if name in e.aliases]
        if by_alias:
            return by_alias
        by_prefix = [e for e in ordered if e.container_id.startswith(name)]
        if len(by_prefix) == 1:
            return by_prefix
        return []
