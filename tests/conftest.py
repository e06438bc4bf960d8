"""Pytest configuration and fixtures for container_engine tests."""

from __future__ import annotations

import tempfile
import time
from pathlib import Path
from typing import Callable, Generator

import pytest
from prometheus_client import CollectorRegistry

from container_engine.adapters.outbound import MockHealthProbe, MockProcessSandbox
from container_engine.application import ContainerEngine
from container_engine.domain.services import (
    ContainerManager,
    EventBus,
    KeyedLocks,
    NetworkManager,
    ResourceStore,
    TimerService,
    VolumeManager,
)
from container_engine.infrastructure.config import (
    Config,
    EngineConfig,
    EventsConfig,
    HealthConfig,
    RestartConfig,
)
from container_engine.infrastructure.metrics import MetricsRegistry


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Provide a test configuration with short timings."""
    return Config(
        engine=EngineConfig(
            state_dir=temp_dir / "state",
            volumes_dir=temp_dir / "volumes",
            journal_path=temp_dir / "state" / "journal.log",
            journal_fsync=False,
            default_stop_timeout=1.0,
            kill_grace=2.0,
        ),
        restart=RestartConfig(backoff_initial=0.01, backoff_max=0.05),
        health=HealthConfig(ready_timeout=5.0),
        events=EventsConfig(history_size=10000),
    )


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry."""
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def sandbox() -> Generator[MockProcessSandbox, None, None]:
    """Provide an in-memory process sandbox."""
    s = MockProcessSandbox()
    yield s
    s.close()


@pytest.fixture
def probe() -> MockHealthProbe:
    """Provide an in-memory health probe that passes by default."""
    return MockHealthProbe(default=True)


@pytest.fixture
def engine(
    test_config: Config,
    sandbox: MockProcessSandbox,
    probe: MockHealthProbe,
    metrics_registry: MetricsRegistry,
) -> Generator[ContainerEngine, None, None]:
    """Provide a started engine."""
    e = ContainerEngine(test_config, sandbox=sandbox, probe=probe, metrics=metrics_registry)
    e.start()
    yield e
    e.shutdown(timeout=0)


@pytest.fixture
def bus() -> Generator[EventBus, None, None]:
    """Provide an event bus."""
    b = EventBus()
    yield b
    b.close()


@pytest.fixture
def timers() -> Generator[TimerService, None, None]:
    """Provide a running timer service."""
    t = TimerService()
    t.start()
    yield t
    t.stop()


@pytest.fixture
def store() -> ResourceStore:
    """Provide an in-memory resource store."""
    return ResourceStore()


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def networks(
    store: ResourceStore, locks: KeyedLocks, bus: EventBus, sandbox: MockProcessSandbox
) -> NetworkManager:
    """Provide a network manager with its own address pool."""
    return NetworkManager(store, locks, bus, sandbox, default_pool="10.20.0.0/16")


@pytest.fixture
def volumes(store: ResourceStore, locks: KeyedLocks, bus: EventBus, temp_dir: Path) -> VolumeManager:
    return VolumeManager(store, locks, bus, temp_dir / "volumes")


@pytest.fixture
def containers(
    store: ResourceStore,
    bus: EventBus,
    sandbox: MockProcessSandbox,
    timers: TimerService,
    locks: KeyedLocks,
    networks: NetworkManager,
    volumes: VolumeManager,
) -> Generator[ContainerManager, None, None]:
    """Provide a container manager with short grace periods."""
    manager = ContainerManager(
        store, bus, sandbox, timers, locks, networks, volumes,
        default_stop_timeout=1.0, kill_grace=2.0,
    )
    yield manager
    manager.shutdown(timeout=0)


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a condition until it holds or the timeout elapses."""

    def _wait(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()

    return _wait


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Tests that wait on real grace periods")
