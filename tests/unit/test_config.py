"""Unit tests for container engine configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from container_engine.infrastructure.config import (
    Config,
    EngineConfig,
    EventsConfig,
    HealthConfig,
    NetworkConfig,
    ObservabilityConfig,
    OrchestratorConfig,
    RestartConfig,
    ServerConfig,
    StoreConfig,
)


@pytest.mark.unit
class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_default_values(self):
        """Test default engine configuration."""
        config = EngineConfig()
        assert config.state_dir == Path("/var/lib/container-engine")
        assert config.volumes_dir == Path("/var/lib/container-engine/volumes")
        assert config.journal_enabled is True
        assert config.default_stop_timeout == 10.0
        assert config.kill_grace == 5.0

    def test_custom_values(self, temp_dir: Path):
        """Test custom engine configuration."""
        config = EngineConfig(
            state_dir=temp_dir / "state",
            volumes_dir=temp_dir / "volumes",
            journal_path=temp_dir / "journal.log",
        )
        assert config.volumes_dir == temp_dir / "volumes"

    def test_negative_stop_timeout_rejected(self):
        """Test that a negative grace period is rejected."""
        with pytest.raises(ValidationError):
            EngineConfig(default_stop_timeout=-1)


@pytest.mark.unit
class TestSectionDefaults:
    """Tests for the smaller configuration sections."""

    def test_store_defaults(self):
        assert StoreConfig().max_retries == 16

    def test_network_defaults(self):
        """Test default network configuration."""
        config = NetworkConfig()
        assert config.default_pool == "172.28.0.0/14"
        assert config.default_prefix == 24
        assert config.create_default_networks is True

    def test_network_prefix_bounds(self):
        with pytest.raises(ValidationError):
            NetworkConfig(default_prefix=31)

    def test_restart_defaults(self):
        config = RestartConfig()
        assert config.backoff_initial == 0.1
        assert config.backoff_max == 10.0

    def test_health_defaults(self):
        config = HealthConfig()
        assert config.probe_workers == 4
        assert config.ready_timeout == 60.0

    def test_orchestrator_defaults(self):
        config = OrchestratorConfig()
        assert config.default_parallelism == 1
        assert config.auto_reconcile is True

    def test_events_defaults(self):
        assert EventsConfig().history_size == 1000

    def test_server_port_range(self):
        """Test port validation."""
        with pytest.raises(ValidationError):
            ServerConfig(metrics_port=70000)


@pytest.mark.unit
class TestObservabilityConfig:
    """Tests for ObservabilityConfig."""

    def test_default_values(self):
        """Test default observability configuration."""
        config = ObservabilityConfig()
        assert config.log_level == "INFO"
        assert config.log_format == "json"
        assert config.otel_endpoint is None
        assert config.otel_service_name == "container_engine"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            ObservabilityConfig(log_level="TRACE")


@pytest.mark.unit
class TestConfig:
    """Tests for the main Config."""

    def test_sections_present(self):
        """Test that every section is built by default."""
        config = Config()
        assert isinstance(config.engine, EngineConfig)
        assert isinstance(config.orchestrator, OrchestratorConfig)
        assert isinstance(config.observability, ObservabilityConfig)

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch):
        """Test nested settings from environment variables."""
        monkeypatch.setenv("CONTAINER_ENGINE_ENGINE__KILL_GRACE", "7.5")
        monkeypatch.setenv("CONTAINER_ENGINE_NETWORK__DEFAULT_PREFIX", "26")
        monkeypatch.setenv("CONTAINER_ENGINE_OBSERVABILITY__LOG_FORMAT", "console")
        config = Config()
        assert config.engine.kill_grace == 7.5
        assert config.network.default_prefix == 26
        assert config.observability.log_format == "console"

    def test_ensure_directories(self, test_config: Config):
        """Test that required directories are created."""
        test_config.ensure_directories()
        assert test_config.engine.state_dir.is_dir()
        assert test_config.engine.volumes_dir.is_dir()
        assert test_config.engine.journal_path.parent.is_dir()
