"""lc-core harness - launch and supervise the lc-core binary in integration tests.

Environment variables:
    BINARY_PATH: lc-core executable (default ../target/release/lc-core)
    DEBUG_MODE: harness debug mode (default false)
    MOONBEAM_LOG: show core output live (default false)
    LC_CORE_LOG: core verbosity (default info)

Usage:
    async with launch_core() as core:
        ...
"""

__version__ = "0.1.0"

from .config import Config, LogLevel, SPAWNING_TIME, get_config, load_config
from .errors import (
    ConfigError,
    HarnessError,
    KillError,
    ReadinessTimeoutError,
    SpawnError,
    UnexpectedExitError,
)
from .harness import launch_core, pick_unused_port
from .runtime import (
    DEFAULT_READINESS_PATTERN,
    LogLine,
    LogRouter,
    LogSource,
    ProcessHandle,
    ProcessState,
    ProcessSupervisor,
    ReadinessMonitor,
)

__all__ = [
    "__version__",
    "Config",
    "ConfigError",
    "DEFAULT_READINESS_PATTERN",
    "HarnessError",
    "KillError",
    "LogLevel",
    "LogLine",
    "LogRouter",
    "LogSource",
    "ProcessHandle",
    "ProcessState",
    "ProcessSupervisor",
    "ReadinessMonitor",
    "ReadinessTimeoutError",
    "SPAWNING_TIME",
    "SpawnError",
    "UnexpectedExitError",
    "get_config",
    "launch_core",
    "load_config",
    "pick_unused_port",
]
