"""Resource store: the single source of truth for engine records.

Containers, networks, volumes and services are held in one table per
kind. Reads return deep copies; writes are compare-and-swap on the
record's ``version`` field, so a caller that read a stale copy gets a
StaleError instead of silently overwriting a concurrent change.

Every committed mutation is appended to the journal (when one is
configured) before it becomes visible, so replaying the journal rebuilds
the exact committed state.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Iterable, Optional

from container_engine.domain.entities import RECORD_TYPES, ResourceKind
from container_engine.domain.errors import (
    ConflictError,
    InUseError,
    NotFoundError,
    StaleError,
)
from container_engine.ports.outbound import JournalEntry, JournalOp, JournalPort

logger = logging.getLogger(__name__)

ID_FIELDS = {
    ResourceKind.CONTAINER: "container_id",
    ResourceKind.NETWORK: "network_id",
    ResourceKind.VOLUME: "volume_id",
    ResourceKind.SERVICE: "service_id",
}


def record_id(kind: ResourceKind, record: Any) -> str:
    """Get the identifier of a record."""
    return getattr(record, ID_FIELDS[kind])


class ResourceStore:
    """Versioned in-memory tables with a name index per kind.

    Thread Safety:
        All methods are thread-safe. The store lock is never held while
        calling back into caller code except the ``mutate`` function,
        which runs outside the lock.
    """

    def __init__(self, journal: Optional[JournalPort] = None, max_retries: int = 16) -> None:
        """Initialize the store.

        Args:
            journal: Optional write-ahead journal for committed mutations.
            max_retries: Attempts ``mutate`` makes before giving up on
                a contended record.
        """
        self._journal = journal
        self._max_retries = max_retries
        self._lock = threading.RLock()
        self._tables: dict[ResourceKind, dict[str, Any]] = {kind: {} for kind in ResourceKind}
        self._names: dict[ResourceKind, dict[str, str]] = {kind: {} for kind in ResourceKind}

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, kind: ResourceKind, resource_id: str) -> Any:
        """Get a copy of a record by exact ID.

        Raises:
            NotFoundError: If no such record exists.
        """
        with self._lock:
            record = self._tables[kind].get(resource_id)
            if record is None:
                raise NotFoundError(kind.value, resource_id)
            return copy.deepcopy(record)

    def exists(self, kind: ResourceKind, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._tables[kind]

    def find(self, kind: ResourceKind, ref: str) -> Any:
        """Resolve a reference to a record.

        The reference is tried as an exact ID, then as a name, then as
        an ID prefix.

        Args:
            kind: Record kind.
            ref: ID, name or ID prefix.

        Returns:
            Copy of the record.

        Raises:
            NotFoundError: If nothing matches.
            ConflictError: If the prefix matches more than one record.
        """
        with self._lock:
            table = self._tables[kind]
            if ref in table:
                return copy.deepcopy(table[ref])
            named = self._names[kind].get(ref)
            if named is not None:
                return copy.deepcopy(table[named])
            if ref:
                matches = [rid for rid in table if rid.startswith(ref)]
                if len(matches) == 1:
                    return copy.deepcopy(table[matches[0]])
                if len(matches) > 1:
                    raise ConflictError(
                        f"Ambiguous {kind.value} reference {ref!r} matches {len(matches)} records"
                    )
            raise NotFoundError(kind.value, ref)

    def resolve_id(self, kind: ResourceKind, ref: str) -> str:
        """Resolve a reference to a record ID (see ``find``)."""
        return record_id(kind, self.find(kind, ref))

    def list(
        self,
        kind: ResourceKind,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> list[Any]:
        """List copies of records, oldest first.

        Args:
            kind: Record kind.
            predicate: Optional filter.

        Returns:
            Matching records.
        """
        with self._lock:
            records = [copy.deepcopy(r) for r in self._tables[kind].values()]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        records.sort(key=lambda r: r.created_at)
        return records

    def count(self, kind: ResourceKind) -> int:
        with self._lock:
            return len(self._tables[kind])

    # =========================================================================
    # Writes
    # =========================================================================

    def create(self, kind: ResourceKind, record: Any) -> str:
        """Insert a new record.

        The stored record starts at version 1.

        Args:
            kind: Record kind.
            record: Entity instance.

        Returns:
            Record ID.

        Raises:
            ConflictError: If the ID or name is already taken.
        """
        self._check_type(kind, record)
        resource_id = record_id(kind, record)
        with self._lock:
            if resource_id in self._tables[kind]:
                raise ConflictError(f"{kind.value} {resource_id} already exists")
            name = getattr(record, "name", None)
            if name and name in self._names[kind]:
                raise ConflictError(f"{kind.value} name {name!r} is already in use")

            stored = copy.deepcopy(record)
            stored.version = 1
            self._write_ahead(JournalOp.PUT, kind, resource_id, stored)
            self._tables[kind][resource_id] = stored
            if name:
                self._names[kind][name] = resource_id
            record.version = 1

        logger.debug(f"Created {kind.value} {resource_id}")
        return resource_id

    def update(self, kind: ResourceKind, record: Any) -> Any:
        """Compare-and-swap a modified copy back into the store.

        Args:
            kind: Record kind.
            record: Modified copy carrying the version it was read at.

        Returns:
            Copy of the stored record at its new version.

        Raises:
            NotFoundError: If the record no longer exists.
            StaleError: If the stored version differs from the copy's.
            ConflictError: If a rename collides with another record.
        """
        self._check_type(kind, record)
        resource_id = record_id(kind, record)
        with self._lock:
            current = self._tables[kind].get(resource_id)
            if current is None:
                raise NotFoundError(kind.value, resource_id)
            if current.version != record.version:
                raise StaleError(kind.value, resource_id, record.version, current.version)

            old_name = getattr(current, "name", None)
            new_name = getattr(record, "name", None)
            if new_name != old_name and new_name:
                owner = self._names[kind].get(new_name)
                if owner is not None and owner != resource_id:
                    raise ConflictError(f"{kind.value} name {new_name!r} is already in use")

            stored = copy.deepcopy(record)
            stored.version = current.version + 1
            self._write_ahead(JournalOp.PUT, kind, resource_id, stored)
            self._tables[kind][resource_id] = stored
            if new_name != old_name:
                if old_name:
                    self._names[kind].pop(old_name, None)
                if new_name:
                    self._names[kind][new_name] = resource_id
            record.version = stored.version
            return copy.deepcopy(stored)

    def mutate(
        self,
        kind: ResourceKind,
        resource_id: str,
        fn: Callable[[Any], None],
        retries: Optional[int] = None,
    ) -> Any:
        """Read, modify and write back a record, retrying on staleness.

        ``fn`` receives a fresh copy and edits it in place. It may raise
        to abort the mutation; nothing is written in that case. ``fn``
        can run more than once and must not have side effects outside
        the record.

        Args:
            kind: Record kind.
            resource_id: Record ID.
            fn: In-place modification.
            retries: Attempts before giving up (defaults to the store bound).

        Returns:
            Copy of the stored record after the change.

        Raises:
            NotFoundError: If the record does not exist.
            StaleError: If every attempt lost a race.
        """
        attempts = retries if retries is not None else self._max_retries
        last_error: StaleError | None = None
        for _ in range(max(attempts, 1)):
            record = self.get(kind, resource_id)
            fn(record)
            try:
                return self.update(kind, record)
            except StaleError as e:
                last_error = e
                logger.debug(f"Retrying contended {kind.value} {resource_id}")
        assert last_error is not None
        raise last_error

    def delete(self, kind: ResourceKind, resource_id: str, force: bool = False) -> None:
        """Delete a record.

        Args:
            kind: Record kind.
            resource_id: Record ID.
            force: Skip the reference checks.

        Raises:
            NotFoundError: If the record does not exist.
            InUseError: If a volume has mounts or a network has members.
            ConflictError: If a service owns the container or another
                service depends on the service.
        """
        with self._lock:
            current = self._tables[kind].get(resource_id)
            if current is None:
                raise NotFoundError(kind.value, resource_id)
            if not force:
                self._check_references(kind, current)

            self._write_ahead(JournalOp.DELETE, kind, resource_id, None)
            del self._tables[kind][resource_id]
            name = getattr(current, "name", None)
            if name and self._names[kind].get(name) == resource_id:
                del self._names[kind][name]

        logger.debug(f"Deleted {kind.value} {resource_id}")

    def _check_references(self, kind: ResourceKind, current: Any) -> None:
        if kind == ResourceKind.VOLUME and current.mounts:
            raise InUseError(
                f"Volume {current.name} is in use by {len(current.holders())} container(s)"
            )
        if kind == ResourceKind.NETWORK and current.members:
            raise InUseError(
                f"Network {current.name} has {len(current.members)} attached container(s)"
            )
        if kind == ResourceKind.CONTAINER:
            for service in self._tables[ResourceKind.SERVICE].values():
                if current.container_id in service.replicas:
                    raise ConflictError(
                        f"Container {current.container_id} is owned by service {service.name}"
                    )
        if kind == ResourceKind.SERVICE:
            for service in self._tables[ResourceKind.SERVICE].values():
                if service.service_id != current.service_id and current.name in service.spec.depends_on:
                    raise ConflictError(
                        f"Service {service.name} depends on service {current.name}"
                    )

    # =========================================================================
    # Journal
    # =========================================================================

    def _write_ahead(self, op: JournalOp, kind: ResourceKind, resource_id: str, record: Any) -> None:
        if self._journal is not None:
            self._journal.append(JournalEntry(op, kind.value, resource_id, record))

    def load(self, entries: Iterable[JournalEntry]) -> int:
        """Apply journal entries without journaling them again.

        Args:
            entries: Entries in commit order.

        Returns:
            Number of entries applied.
        """
        applied = 0
        with self._lock:
            for entry in entries:
                kind = ResourceKind(entry.kind)
                table = self._tables[kind]
                previous = table.pop(entry.record_id, None)
                if previous is not None:
                    name = getattr(previous, "name", None)
                    if name and self._names[kind].get(name) == entry.record_id:
                        del self._names[kind][name]
                if entry.op == JournalOp.PUT:
                    record = copy.deepcopy(entry.record)
                    table[entry.record_id] = record
                    name = getattr(record, "name", None)
                    if name:
                        self._names[kind][name] = entry.record_id
                applied += 1
        logger.info(f"Loaded {applied} journal entries")
        return applied

    def export(self) -> list[JournalEntry]:
        """Snapshot every record as PUT entries, oldest first."""
        with self._lock:
            entries = []
            for kind in ResourceKind:
                for resource_id, record in self._tables[kind].items():
                    entries.append(
                        JournalEntry(JournalOp.PUT, kind.value, resource_id, copy.deepcopy(record))
                    )
        entries.sort(key=lambda e: e.record.created_at)
        return entries

    def clear(self) -> None:
        """Drop every record. Nothing is journaled."""
        with self._lock:
            for kind in ResourceKind:
                self._tables[kind].clear()
                self._names[kind].clear()

    @staticmethod
    def _check_type(kind: ResourceKind, record: Any) -> None:
        expected = RECORD_TYPES[kind]
        if not isinstance(record, expected):
            raise TypeError(f"Expected {expected.__name__} for {kind.value}, got {type(record).__name__}")
