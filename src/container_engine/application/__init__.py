"""Application layer for the container engine.

The application layer wires domain services and adapters together and
exposes the engine's intents.

Exports:
    - ContainerEngine: Main entry point for the engine
    - DEFAULT_NETWORKS: Networks created on start
"""

from container_engine.application.engine import DEFAULT_NETWORKS, ContainerEngine

__all__ = [
    "ContainerEngine",
    "DEFAULT_NETWORKS",
]
