"""Mock health probe for testing and development.

This adapter provides an in-memory implementation of the HealthProbePort
protocol. Results are scripted per container, per image, or by default.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Callable, Sequence, Union

from container_engine.domain.entities.container import Container
from container_engine.ports.outbound import ProbeError

logger = logging.getLogger(__name__)

ProbeResult = Union[bool, Callable[[Container], bool]]


class MockHealthProbe:
    """Mock implementation of HealthProbePort for testing.

    Example:
        probe = MockHealthProbe(default=True)
        probe.set_image_result("web:2", False)
        probe.set_container_result("web-1", lambda c: c.restart_count > 0)
    """

    def __init__(self, default: ProbeResult = True) -> None:
        """Initialize mock probe.

        Args:
            default: Result for containers without their own.
        """
        self._lock = threading.Lock()
        self._default = default
        self._by_image: dict[str, ProbeResult] = {}
        self._by_container: dict[str, ProbeResult] = {}
        self._broken: set[str] = set()
        self._checks: Counter[str] = Counter()

    def set_default(self, result: ProbeResult) -> None:
        with self._lock:
            self._default = result

    def set_image_result(self, image: str, result: ProbeResult) -> None:
        """Script the result for every container of an image."""
        with self._lock:
            self._by_image[image] = result

    def set_container_result(self, ref: str, result: ProbeResult) -> None:
        """Script the result for one container, by ID or name."""
        with self._lock:
            self._by_container[ref] = result

    def break_probe(self, image: str) -> None:
        """Make probes of an image fail to run at all."""
        with self._lock:
            self._broken.add(image)

    def check(self, container: Container, command: Sequence[str], timeout: float) -> bool:
        """Run one scripted probe.

        Raises:
            ProbeError: If the image's probe is broken.
        """
        with self._lock:
            self._checks[container.container_id] += 1
            if container.image in self._broken:
                raise ProbeError(f"Cannot run {' '.join(command) or 'probe'} in {container.display_name}")
            result = self._by_container.get(container.container_id)
            if result is None and container.name:
                result = self._by_container.get(container.name)
            if result is None:
                result = self._by_image.get(container.image, self._default)
        if callable(result):
            result = result(container)
        logger.debug(f"Probe of {container.display_name}: {'pass' if result else 'fail'}")
        return bool(result)

    # Test helpers
    def check_count(self, container_id: str) -> int:
        """Number of probes run against a container."""
        with self._lock:
            return self._checks[container_id]

    def clear(self) -> None:
        """Clear all scripted results (for testing)."""
        with self._lock:
            self._by_image.clear()
            self._by_container.clear()
            self._broken.clear()
            self._checks.clear()
