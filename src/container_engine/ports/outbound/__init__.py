"""Outbound ports - External dependency interfaces for the container engine.

Outbound ports define the interfaces of the collaborators the engine
drives but does not implement: the process sandbox that owns namespaces
and cgroups, the health probe runner, and the crash-recovery journal.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Protocol, Sequence

from container_engine.domain.entities.container import Container, ResourceLimits


# =============================================================================
# Process Sandbox Port
# =============================================================================


class SignalKind(Enum):
    """Signals the engine delivers to a sandboxed root process."""
    HUP = 1
    INT = 2
    QUIT = 3
    KILL = 9
    USR1 = 10
    USR2 = 12
    TERM = 15

    @classmethod
    def parse(cls, value: str | int | SignalKind) -> SignalKind:
        """Parse ``SIGTERM``, ``TERM``, ``15`` or a SignalKind.

        Raises:
            ValueError: If the signal is unknown.
        """
        if isinstance(value, SignalKind):
            return value
        if isinstance(value, int) or str(value).isdigit():
            return cls(int(value))
        name = str(value).upper()
        if name.startswith("SIG"):
            name = name[3:]
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown signal: {value}") from None

    @property
    def is_forceful(self) -> bool:
        return self is SignalKind.KILL

    @property
    def ends_process(self) -> bool:
        """Default action terminates the process."""
        return self in (SignalKind.INT, SignalKind.QUIT, SignalKind.KILL, SignalKind.TERM)


@dataclass(frozen=True)
class NetworkHandle:
    """What the sandbox needs to join a process to a network."""
    network_id: str
    driver: str
    address: str | None = None
    gateway: str | None = None
    subnet: str | None = None
    internal: bool = False
    aliases: tuple[str, ...] = field(default_factory=tuple)


class ProcessSandboxPort(Protocol):
    """Protocol for spawning and controlling sandboxed process trees.

    The implementation owns namespaces, cgroups and the root filesystem
    built from the opaque image reference.

    Thread Safety:
        All methods must be thread-safe. ``wait`` blocks the calling
        thread only.
    """

    @abstractmethod
    def spawn(
        self,
        image: str,
        command: Sequence[str],
        env: Mapping[str, str],
        limits: ResourceLimits,
    ) -> int:
        """Spawn a process tree.

        Args:
            image: Opaque image reference.
            command: Command and arguments.
            env: Environment variables.
            limits: Resource limits.

        Returns:
            PID of the root process.

        Raises:
            SandboxError: If spawning fails.
        """
        ...

    @abstractmethod
    def signal(self, pid: int, signal: SignalKind) -> None:
        """Deliver a signal to the root process.

        Raises:
            SandboxError: If the process is unknown or delivery fails.
        """
        ...

    @abstractmethod
    def freeze(self, pid: int) -> None:
        """Freeze the whole process tree.

        Raises:
            SandboxError: If freezing fails.
        """
        ...

    @abstractmethod
    def unfreeze(self, pid: int) -> None:
        """Thaw a frozen process tree.

        Raises:
            SandboxError: If thawing fails.
        """
        ...

    @abstractmethod
    def wait(self, pid: int) -> int:
        """Block until the root process exits.

        Returns:
            Exit code.

        Raises:
            SandboxError: If the process is unknown.
        """
        ...

    @abstractmethod
    def attach_namespace(self, pid: int, network: NetworkHandle) -> None:
        """Join the process tree to a network namespace.

        Raises:
            SandboxError: If the attach fails.
        """
        ...


class SandboxError(Exception):
    """Raised when a sandbox operation fails."""

    pass


# =============================================================================
# Health Probe Port
# =============================================================================


class HealthProbePort(Protocol):
    """Protocol for running a container's health check command.

    Thread Safety:
        All methods must be thread-safe.
    """

    @abstractmethod
    def check(self, container: Container, command: Sequence[str], timeout: float) -> bool:
        """Run one probe.

        Args:
            container: Container being probed.
            command: Health check command.
            timeout: Seconds the probe may take.

        Returns:
            True if the probe passed.

        Raises:
            ProbeError: If the probe could not be run.
        """
        ...


class ProbeError(Exception):
    """Raised when a probe cannot be executed."""

    pass


# =============================================================================
# Journal Port
# =============================================================================


class JournalOp(Enum):
    """Journal entry operation."""
    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class JournalEntry:
    """One committed resource store mutation."""
    op: JournalOp
    kind: str
    record_id: str
    record: Optional[Any] = None  # Entity instance for PUT


class JournalPort(Protocol):
    """Protocol for the write-ahead journal of store mutations.

    Thread Safety:
        All methods must be thread-safe.
    """

    @abstractmethod
    def append(self, entry: JournalEntry) -> None:
        """Durably append an entry.

        Raises:
            JournalError: If the write fails.
        """
        ...

    @abstractmethod
    def replay(self) -> Iterator[JournalEntry]:
        """Yield entries in append order, stopping at a torn tail."""
        ...

    @abstractmethod
    def compact(self, entries: Sequence[JournalEntry]) -> None:
        """Replace the journal with the given entries."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Flush and close."""
        ...


class JournalError(Exception):
    """Raised when the journal cannot be read or written."""

    pass


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Sandbox
    "ProcessSandboxPort",
    "SignalKind",
    "NetworkHandle",
    "SandboxError",
    # Health probe
    "HealthProbePort",
    "ProbeError",
    # Journal
    "JournalPort",
    "JournalEntry",
    "JournalOp",
    "JournalError",
]
