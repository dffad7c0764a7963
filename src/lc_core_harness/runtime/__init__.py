"""Runtime module for process supervision, log routing and readiness.

This module spawns the core binary in an isolated process group, routes its
output, detects readiness and guarantees termination.
"""

from __future__ import annotations

from .log_router import LogRouter
from .readiness import DEFAULT_READINESS_PATTERN, ReadinessMonitor
from .supervisor import ProcessSupervisor
from .types import LogLine, LogSource, ProcessHandle, ProcessState

__all__ = [
    "DEFAULT_READINESS_PATTERN",
    "LogLine",
    "LogRouter",
    "LogSource",
    "ProcessHandle",
    "ProcessState",
    "ProcessSupervisor",
    "ReadinessMonitor",
]
