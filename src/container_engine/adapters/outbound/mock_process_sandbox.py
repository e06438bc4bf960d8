"""Mock process sandbox for testing and development.

This adapter provides an in-memory implementation of the
ProcessSandboxPort protocol. Processes are simulated: they run until
signalled, or exit on their own after a configured duration, with
scriptable exit codes per image.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from container_engine.domain.entities.container import ResourceLimits
from container_engine.ports.outbound import (
    NetworkHandle,
    SandboxError,
    SignalKind,
)

logger = logging.getLogger(__name__)

# Conventional 128 + signal number exit codes
SIGNAL_EXIT_CODES = {
    SignalKind.INT: 130,
    SignalKind.QUIT: 131,
    SignalKind.KILL: 137,
    SignalKind.TERM: 143,
}


@dataclass
class ProcessBehavior:
    """Scripted behaviour of processes spawned from one image."""

    exit_codes: Sequence[int] = ()  # Natural exit code per run; the last one repeats
    run_for: Optional[float] = None  # Seconds until a natural exit; None runs until signalled
    ignore_term: bool = False
    fail_spawn: bool = False
    fail_attach: bool = False

    def exit_code_for(self, run_index: int) -> int:
        if not self.exit_codes:
            return 0
        return self.exit_codes[min(run_index, len(self.exit_codes) - 1)]


@dataclass
class MockProcessState:
    """State of one simulated process tree."""

    pid: int
    image: str
    command: list[str]
    env: dict[str, str]
    limits: ResourceLimits
    behavior: ProcessBehavior
    natural_exit_code: int = 0
    frozen: bool = False
    exit_code: Optional[int] = None
    exited: threading.Event = field(default_factory=threading.Event)
    signals: list[SignalKind] = field(default_factory=list)
    deferred: list[SignalKind] = field(default_factory=list)
    namespaces: list[NetworkHandle] = field(default_factory=list)
    exit_pending: bool = False
    timer: Optional[threading.Timer] = None

    @property
    def alive(self) -> bool:
        return self.exit_code is None


class MockProcessSandbox:
    """Mock implementation of ProcessSandboxPort for testing.

    Example:
        sandbox = MockProcessSandbox()
        sandbox.set_behavior("crashy:1", ProcessBehavior(exit_codes=[1], run_for=0.05))
        pid = sandbox.spawn("crashy:1", [], {}, ResourceLimits())
        assert sandbox.wait(pid) == 1
    """

    def __init__(self, default_behavior: Optional[ProcessBehavior] = None) -> None:
        """Initialize mock sandbox.

        Args:
            default_behavior: Behaviour of images without their own.
        """
        self._lock = threading.Lock()
        self._default = default_behavior or ProcessBehavior()
        self._behaviors: dict[str, ProcessBehavior] = {}
        self._processes: dict[int, MockProcessState] = {}
        self._runs: dict[str, int] = {}
        self._pids = itertools.count(1000)
        self._closed = False

    def set_behavior(self, image: str, behavior: ProcessBehavior) -> None:
        """Script the processes of an image."""
        with self._lock:
            self._behaviors[image] = behavior

    def spawn(
        self,
        image: str,
        command: Sequence[str],
        env: Mapping[str, str],
        limits: ResourceLimits,
    ) -> int:
        """Spawn a simulated process tree.

        Raises:
            SandboxError: If the image is scripted to fail.
        """
        with self._lock:
            if self._closed:
                raise SandboxError("Sandbox is closed")
            behavior = self._behaviors.get(image, self._default)
            if behavior.fail_spawn:
                raise SandboxError(f"Cannot spawn {image}: scripted failure")
            run_index = self._runs.get(image, 0)
            self._runs[image] = run_index + 1
            pid = next(self._pids)
            process = MockProcessState(
                pid=pid,
                image=image,
                command=list(command),
                env=dict(env),
                limits=limits,
                behavior=behavior,
                natural_exit_code=behavior.exit_code_for(run_index),
            )
            self._processes[pid] = process
            if behavior.run_for is not None:
                process.timer = threading.Timer(behavior.run_for, self._natural_exit, args=(pid,))
                process.timer.daemon = True
                process.timer.start()

        logger.debug(f"Spawned mock process {pid} for {image}")
        return pid

    def signal(self, pid: int, signal: SignalKind) -> None:
        """Deliver a signal.

        Raises:
            SandboxError: If the process is unknown.
        """
        with self._lock:
            process = self._get(pid)
            process.signals.append(signal)
            if not process.alive:
                return
            if signal == SignalKind.KILL:
                self._exit(process, SIGNAL_EXIT_CODES[SignalKind.KILL])
            elif process.frozen:
                process.deferred.append(signal)
            else:
                self._handle(process, signal)
        logger.debug(f"Delivered SIG{signal.name} to mock process {pid}")

    def freeze(self, pid: int) -> None:
        """Freeze a process tree.

        Raises:
            SandboxError: If the process is unknown or has exited.
        """
        with self._lock:
            process = self._get(pid)
            if not process.alive:
                raise SandboxError(f"Process {pid} has exited")
            process.frozen = True

    def unfreeze(self, pid: int) -> None:
        """Thaw a process tree, delivering signals that arrived meanwhile.

        Raises:
            SandboxError: If the process is unknown.
        """
        with self._lock:
            process = self._get(pid)
            process.frozen = False
            deferred, process.deferred = process.deferred, []
            for signal in deferred:
                if process.alive:
                    self._handle(process, signal)
            if process.alive and process.exit_pending:
                self._exit(process, process.natural_exit_code)

    def wait(self, pid: int) -> int:
        """Block until the process exits.

        Raises:
            SandboxError: If the process is unknown.
        """
        with self._lock:
            process = self._get(pid)
        process.exited.wait()
        return process.exit_code

    def attach_namespace(self, pid: int, network: NetworkHandle) -> None:
        """Record a network namespace join.

        Raises:
            SandboxError: If the process is unknown or the image is
                scripted to fail.
        """
        with self._lock:
            process = self._get(pid)
            if process.behavior.fail_attach:
                raise SandboxError(f"Cannot join {network.network_id}: scripted failure")
            process.namespaces.append(network)

    def _natural_exit(self, pid: int) -> None:
        with self._lock:
            process = self._processes.get(pid)
            if process is None or not process.alive:
                return
            if process.frozen:
                process.exit_pending = True
                return
            self._exit(process, process.natural_exit_code)

    def _handle(self, process: MockProcessState, signal: SignalKind) -> None:
        # Caller holds the lock
        if signal == SignalKind.TERM and process.behavior.ignore_term:
            return
        code = SIGNAL_EXIT_CODES.get(signal)
        if code is not None:
            self._exit(process, code)

    def _exit(self, process: MockProcessState, exit_code: int) -> None:
        # Caller holds the lock
        process.exit_code = exit_code
        process.frozen = False
        if process.timer is not None:
            process.timer.cancel()
        process.exited.set()

    def _get(self, pid: int) -> MockProcessState:
        process = self._processes.get(pid)
        if process is None:
            raise SandboxError(f"Unknown process: {pid}")
        return process

    # Test helpers
    def process(self, pid: int) -> MockProcessState | None:
        """Get process state for testing."""
        with self._lock:
            return self._processes.get(pid)

    def signals_received(self, pid: int) -> list[SignalKind]:
        """Signals delivered to a process, in order."""
        with self._lock:
            process = self._processes.get(pid)
            return list(process.signals) if process else []

    def namespaces(self, pid: int) -> list[NetworkHandle]:
        """Networks a process joined, in order."""
        with self._lock:
            process = self._processes.get(pid)
            return list(process.namespaces) if process else []

    def live_pids(self) -> list[int]:
        with self._lock:
            return [pid for pid, p in self._processes.items() if p.alive]

    def spawn_count(self, image: Optional[str] = None) -> int:
        """Processes spawned, optionally for one image."""
        with self._lock:
            if image is None:
                return sum(self._runs.values())
            return self._runs.get(image, 0)

    def exit(self, pid: int, exit_code: int = 0) -> None:
        """Make a process exit now, as if it finished on its own."""
        with self._lock:
            process = self._get(pid)
            if process.alive:
                self._exit(process, exit_code)

    def close(self) -> None:
        """Kill every live process, releasing all waiters."""
        with self._lock:
            self._closed = True
            for process in self._processes.values():
                if process.alive:
                    self._exit(process, SIGNAL_EXIT_CODES[SignalKind.KILL])
