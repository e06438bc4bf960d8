"""Volume entities."""

from __future__ import annotations

from dataclasses import dataclass, field
import time


@dataclass(frozen=True)
class Mount:
    """One container binding of a volume."""
    container_id: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class MountHandle:
    """Result of binding a volume into a container."""
    volume_id: str
    volume_name: str
    container_id: str
    container_path: str
    read_only: bool
    mountpoint: str  # Host directory backing the volume


@dataclass
class Volume:
    """Volume entity.

    Identity is independent of any container: data under the mountpoint
    outlives every container that mounted it.
    """
    volume_id: str
    name: str
    driver: str = "local"
    labels: dict[str, str] = field(default_factory=dict)
    anonymous: bool = False
    mountpoint: str = ""
    mounts: list[Mount] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    version: int = 0

    @property
    def ref_count(self) -> int:
        """Number of live bindings."""
        return len(self.mounts)

    def is_bound_by(self, container_id: str) -> bool:
        return any(m.container_id == container_id for m in self.mounts)

    def holders(self) -> list[str]:
        """Container IDs holding a binding, in bind order, without repeats."""
        seen: list[str] = []
        for mount in self.mounts:
            if mount.container_id not in seen:
                seen.append(mount.container_id)
        return seen
