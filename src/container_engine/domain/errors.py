"""Error taxonomy for the container engine.

Every error raised synchronously to an intent caller derives from
EngineError. Asynchronous failures (health checks, restart exhaustion)
are published as events instead and surfaced by whichever observer
started the operation.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class NotFoundError(EngineError):
    """Raised when a referenced id or name does not exist."""

    def __init__(self, kind: str, ref: str) -> None:
        super().__init__(f"{kind} not found: {ref}")
        self.kind = kind
        self.ref = ref


class InvalidStateError(EngineError):
    """Raised when a transition is not legal from the current state."""

    def __init__(self, resource_id: str, state: str, action: str) -> None:
        super().__init__(f"Cannot {action} {resource_id} in state {state}")
        self.resource_id = resource_id
        self.state = state
        self.action = action


class ConflictError(EngineError):
    """Raised when an operation collides with an existing record."""

    pass


class InUseError(ConflictError):
    """Raised when a delete is blocked by a live reference."""

    pass


class AlreadyBoundError(ConflictError):
    """Raised when a container already mounts a volume at a path."""

    pass


class StaleError(EngineError):
    """Raised when a compare-and-swap loses a race. Callers should retry."""

    retryable = True

    def __init__(self, kind: str, resource_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Stale {kind} {resource_id}: expected version {expected}, found {actual}"
        )
        self.kind = kind
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual


class CyclicDependencyError(EngineError):
    """Raised when the service dependency graph contains a cycle."""

    def __init__(self, edge: tuple[str, str]) -> None:
        super().__init__(f"Cyclic dependency: {edge[0]} -> {edge[1]}")
        self.edge = edge


class HealthCheckTimeoutError(EngineError):
    """Raised when replicas never became ready."""

    def __init__(self, message: str, container_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.container_ids = list(container_ids or [])


class SandboxFailureError(EngineError):
    """Raised when the process sandbox could not spawn or signal."""

    def __init__(self, container_id: str, reason: str) -> None:
        super().__init__(f"Sandbox failure for {container_id}: {reason}")
        self.container_id = container_id
        self.reason = reason


class PolicyViolationError(EngineError):
    """Raised when a request breaks a network boundary rule."""

    pass


class AddressPoolExhaustedError(EngineError):
    """Raised when no address or subnet is left to allocate."""

    pass
