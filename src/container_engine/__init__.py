"""
Container Engine - Container Lifecycle and Orchestration

A single-node engine that tracks sandboxed process state, applies
shutdown and restart policy, manages networks and volumes as first-class
resources, and rolls out multi-service deployments with dependency
ordering and health gating.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"
