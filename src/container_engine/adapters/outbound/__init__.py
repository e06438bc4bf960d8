"""Outbound adapters - Implementations of outbound port interfaces.

Provides the file journal and mock sandbox/probe implementations for
testing and development without a real process sandbox.
"""

from container_engine.adapters.outbound.file_journal import FileJournal
from container_engine.adapters.outbound.mock_health_probe import MockHealthProbe
from container_engine.adapters.outbound.mock_process_sandbox import (
    MockProcessSandbox,
    MockProcessState,
    ProcessBehavior,
)

__all__ = [
    # Journal
    "FileJournal",
    # Sandbox
    "MockProcessSandbox",
    "MockProcessState",
    "ProcessBehavior",
    # Health probe
    "MockHealthProbe",
]
