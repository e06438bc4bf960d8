"""Configuration management for the container engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseModel):
    """Engine state and container lifecycle configuration."""

    state_dir: Path = Field(default=Path("/var/lib/container-engine"), description="Engine state dir")
    volumes_dir: Path = Field(
        default=Path("/var/lib/container-engine/volumes"), description="Volume mountpoints root"
    )
    journal_path: Path = Field(
        default=Path("/var/lib/container-engine/journal.log"), description="Resource store journal"
    )
    journal_enabled: bool = Field(default=True, description="Persist the resource store")
    journal_fsync: bool = Field(default=True, description="Fsync every journal append")
    default_stop_timeout: float = Field(default=10.0, ge=0, description="Seconds before SIGKILL on stop")
    kill_grace: float = Field(default=5.0, gt=0, description="Seconds to wait for exit after SIGKILL")


class StoreConfig(BaseModel):
    """Resource store configuration."""

    max_retries: int = Field(default=16, ge=1, description="CAS retries per mutation")


class NetworkConfig(BaseModel):
    """Network configuration."""

    default_pool: str = Field(default="172.28.0.0/14", description="Pool for automatic subnets")
    default_prefix: int = Field(default=24, ge=8, le=30, description="Prefix of automatic subnets")
    create_default_networks: bool = Field(
        default=True, description="Create bridge, host and none networks on start"
    )


class RestartConfig(BaseModel):
    """Restart policy back-off configuration."""

    backoff_initial: float = Field(default=0.1, ge=0, description="First restart delay in seconds")
    backoff_max: float = Field(default=10.0, ge=0, description="Restart delay ceiling in seconds")


class HealthConfig(BaseModel):
    """Health check configuration."""

    probe_workers: int = Field(default=4, ge=1, description="Concurrent health probes")
    ready_timeout: float = Field(default=60.0, gt=0, description="Default service ready timeout")


class OrchestratorConfig(BaseModel):
    """Orchestrator configuration."""

    default_parallelism: int = Field(default=1, ge=1, description="Replicas per rollout batch")
    default_delay: float = Field(default=0.0, ge=0, description="Pause between rollout batches")
    auto_reconcile: bool = Field(default=True, description="Replace replicas whose restart was declined")


class EventsConfig(BaseModel):
    """Event bus configuration."""

    history_size: int = Field(default=1000, ge=0, description="Events kept in history")


class ServerConfig(BaseModel):
    """Server configuration."""

    metrics_enabled: bool = Field(default=False, description="Serve Prometheus metrics")
    metrics_port: int = Field(default=8003, ge=1, le=65535, description="Prometheus metrics port")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    otel_endpoint: str | None = Field(default=None)
    otel_service_name: str = Field(default="container_engine")


class Config(BaseSettings):
    """Main configuration for the container engine."""

    model_config = SettingsConfigDict(
        env_prefix="CONTAINER_ENGINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    restart: RestartConfig = Field(default_factory=RestartConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.engine.state_dir.mkdir(parents=True, exist_ok=True)
        self.engine.volumes_dir.mkdir(parents=True, exist_ok=True)
        self.engine.journal_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    config = Config()
    config.ensure_directories()
    return config
