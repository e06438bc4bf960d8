"""Volume manager service."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Callable, Optional

from container_engine.domain.entities import (
    Event,
    EventType,
    Mount,
    MountHandle,
    ResourceKind,
    Volume,
    VolumeBinding,
)
from container_engine.domain.errors import (
    AlreadyBoundError,
    ConflictError,
    InUseError,
    NotFoundError,
)
from container_engine.domain.services.event_bus import EventBus
from container_engine.domain.services.locks import KeyedLocks
from container_engine.domain.services.resource_store import ResourceStore
from container_engine.domain.value_objects import create_volume_id, generate_id, is_valid_name

logger = logging.getLogger(__name__)


class VolumeManager:
    """Manages named and anonymous volumes.

    Handles:
    - Volume creation with a mountpoint under the volumes root
    - Binding volumes into containers (reference counting)
    - Unbinding on container removal
    - Removal and pruning of unreferenced volumes

    Reference counts live on the volume record and change only through
    the store's compare-and-swap, always while holding the lock of the
    container whose binding is being added or dropped.
    """

    def __init__(
        self,
        store: ResourceStore,
        locks: KeyedLocks,
        bus: EventBus,
        volumes_root: Path,
    ) -> None:
        """Initialize volume manager.

        Args:
            store: Resource store.
            locks: Per-container locks.
            bus: Event bus.
            volumes_root: Directory holding volume mountpoints.
        """
        self._store = store
        self._locks = locks
        self._bus = bus
        self._root = Path(volumes_root)

    def create_volume(
        self,
        name: Optional[str] = None,
        driver: str = "local",
        labels: Optional[dict[str, str]] = None,
    ) -> Volume:
        """Create a volume.

        Args:
            name: Volume name; a random name makes the volume anonymous.
            driver: Volume driver.
            labels: Volume labels.

        Returns:
            Created volume.

        Raises:
            ValueError: If the name is invalid.
            ConflictError: If the name is taken.
        """
        anonymous = name is None
        if name is None:
            name = generate_id()
        if not is_valid_name(name):
            raise ValueError(f"Invalid volume name: {name!r}")

        mountpoint = self._root / name / "_data"
        volume = Volume(
            volume_id=create_volume_id(),
            name=name,
            driver=driver,
            labels=dict(labels or {}),
            anonymous=anonymous,
            mountpoint=str(mountpoint),
        )
        self._store.create(ResourceKind.VOLUME, volume)
        try:
            mountpoint.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._store.delete(ResourceKind.VOLUME, volume.volume_id, force=True)
            raise

        logger.info(f"Created volume {name}")
        self._publish(EventType.VOLUME_CREATED, volume.volume_id, name=name, anonymous=anonymous)
        return self._store.get(ResourceKind.VOLUME, volume.volume_id)

    def get_volume(self, ref: str) -> Volume:
        """Get a volume by ID, name or ID prefix."""
        return self._store.find(ResourceKind.VOLUME, ref)

    def list_volumes(self, predicate: Optional[Callable[[Volume], bool]] = None) -> list[Volume]:
        """List volumes, oldest first."""
        return self._store.list(ResourceKind.VOLUME, predicate)

    def bind(
        self,
        volume_ref: str,
        container_id: str,
        path: str,
        read_only: bool = False,
        create: bool = False,
    ) -> MountHandle:
        """Mount a volume into a container.

        Args:
            volume_ref: Volume ID, name or ID prefix.
            container_id: Container ID.
            path: Absolute path inside the container.
            read_only: Mount read-only.
            create: Create a named volume that does not exist yet.

        Returns:
            Mount handle.

        Raises:
            ValueError: If the path is relative.
            NotFoundError: If the container or volume does not exist.
            AlreadyBoundError: If the container already mounts the volume there.
            ConflictError: If another volume is mounted at the path.
        """
        if not path.startswith("/"):
            raise ValueError(f"Mount path must be absolute: {path!r}")

        with self._locks.hold(container_id):
            container = self._store.get(ResourceKind.CONTAINER, container_id)
            volume = self._find_or_create(volume_ref, create)

            if container.has_mount(volume.volume_id, path):
                raise AlreadyBoundError(
                    f"Container {container.display_name} already mounts {volume.name} at {path}"
                )
            if any(m.container_path == path for m in container.mounts):
                raise ConflictError(f"Container {container.display_name} already has a mount at {path}")

            mount = Mount(container_id, path, read_only)

            def add_mount(record: Volume) -> None:
                if mount in record.mounts or Mount(container_id, path, not read_only) in record.mounts:
                    raise AlreadyBoundError(f"Volume {record.name} is already mounted at {path}")
                record.mounts.append(mount)

            volume = self._store.mutate(ResourceKind.VOLUME, volume.volume_id, add_mount)
            binding = VolumeBinding(volume.volume_id, path, read_only)
            try:
                self._store.mutate(
                    ResourceKind.CONTAINER, container_id, lambda c: c.mounts.append(binding)
                )
            except Exception:
                self._drop_mounts(volume.volume_id, container_id, path)
                raise

            logger.debug(f"Mounted volume {volume.name} into {container.display_name} at {path}")
            self._publish(
                EventType.VOLUME_MOUNTED,
                volume.volume_id,
                name=volume.name,
                container_id=container_id,
                path=path,
                read_only=read_only,
                ref_count=volume.ref_count,
            )

        return MountHandle(
            volume_id=volume.volume_id,
            volume_name=volume.name,
            container_id=container_id,
            container_path=path,
            read_only=read_only,
            mountpoint=volume.mountpoint,
        )

    def unbind(self, container_id: str) -> list[str]:
        """Drop every binding a container holds.

        Args:
            container_id: Container ID.

        Returns:
            IDs of the volumes the container held, in mount order.
        """
        with self._locks.hold(container_id):
            volume_ids: list[str] = []
            try:
                container = self._store.get(ResourceKind.CONTAINER, container_id)
                volume_ids = [m.volume_id for m in container.mounts]
            except NotFoundError:
                container = None
            for volume in self._store.list(ResourceKind.VOLUME, lambda v: v.is_bound_by(container_id)):
                if volume.volume_id not in volume_ids:
                    volume_ids.append(volume.volume_id)

            released = []
            for volume_id in dict.fromkeys(volume_ids):
                if self._release(volume_id, container_id):
                    released.append(volume_id)
            if container is not None and container.mounts:
                self._store.mutate(ResourceKind.CONTAINER, container_id, lambda c: c.mounts.clear())
            return released

    def remove_volume(self, ref: str, force: bool = False) -> None:
        """Remove a volume and its data.

        Args:
            ref: Volume ID, name or ID prefix.
            force: Unbind every holder first.

        Raises:
            NotFoundError: If the volume does not exist.
            InUseError: If the volume is mounted and ``force`` is not set.
        """
        volume = self._store.find(ResourceKind.VOLUME, ref)
        if volume.ref_count and not force:
            raise InUseError(
                f"Volume {volume.name} is in use by {len(volume.holders())} container(s)"
            )
        if force:
            def drop_binding(container) -> None:
                container.mounts = [m for m in container.mounts if m.volume_id != volume.volume_id]

            for holder in volume.holders():
                with self._locks.hold(holder):
                    self._release(volume.volume_id, holder)
                    if self._store.exists(ResourceKind.CONTAINER, holder):
                        self._store.mutate(ResourceKind.CONTAINER, holder, drop_binding)
                logger.warning(f"Force-unbound volume {volume.name} from {holder}")

        self._store.delete(ResourceKind.VOLUME, volume.volume_id)
        shutil.rmtree(Path(volume.mountpoint).parent, ignore_errors=True)

        logger.info(f"Removed volume {volume.name}")
        self._publish(EventType.VOLUME_REMOVED, volume.volume_id, name=volume.name)

    def remove_if_anonymous(self, volume_id: str) -> bool:
        """Remove an unreferenced anonymous volume.

        Returns:
            True if the volume was removed.
        """
        try:
            volume = self._store.get(ResourceKind.VOLUME, volume_id)
        except NotFoundError:
            return False
        if not volume.anonymous or volume.ref_count:
            return False
        try:
            self.remove_volume(volume_id)
        except (InUseError, NotFoundError):
            return False
        return True

    def prune(self, all: bool = False) -> list[str]:
        """Remove unreferenced volumes.

        Args:
            all: Include named volumes; otherwise only anonymous ones.

        Returns:
            Names of the removed volumes.
        """
        removed = []
        for volume in self.list_volumes(lambda v: v.ref_count == 0 and (all or v.anonymous)):
            try:
                self.remove_volume(volume.volume_id)
            except (InUseError, NotFoundError):
                # Bound or removed since the listing
                continue
            removed.append(volume.name)
        if removed:
            logger.info(f"Pruned {len(removed)} volume(s)")
        return removed

    def _find_or_create(self, ref: str, create: bool) -> Volume:
        try:
            return self._store.find(ResourceKind.VOLUME, ref)
        except NotFoundError:
            if not create:
                raise
        try:
            return self.create_volume(ref)
        except ConflictError:
            # Created concurrently
            return self._store.find(ResourceKind.VOLUME, ref)

    def _release(self, volume_id: str, container_id: str) -> bool:
        try:
            volume = self._store.get(ResourceKind.VOLUME, volume_id)
        except NotFoundError:
            return False
        if not volume.is_bound_by(container_id):
            return False
        volume = self._drop_mounts(volume_id, container_id)
        self._publish(
            EventType.VOLUME_UNMOUNTED,
            volume_id,
            name=volume.name,
            container_id=container_id,
            ref_count=volume.ref_count,
        )
        return True

    def _drop_mounts(self, volume_id: str, container_id: str, path: Optional[str] = None) -> Volume:
        def drop(record: Volume) -> None:
            record.mounts = [
                m for m in record.mounts
                if not (m.container_id == container_id and (path is None or m.container_path == path))
            ]

        return self._store.mutate(ResourceKind.VOLUME, volume_id, drop)

    def _publish(self, event_type: EventType, volume_id: str, **attributes) -> None:
        self._bus.publish(Event(event_type, ResourceKind.VOLUME, volume_id, attributes))
