"""Harness configuration resolved from environment variables.

Environment variables:
    BINARY_PATH: path to the lc-core executable
        - default: ../target/release/lc-core

    DEBUG_MODE: harness debug mode
        - true/1/yes/on = enabled (debug logging, child log dumped after every run)
        - false/0/no/off = disabled (default)

    MOONBEAM_LOG: forward child output to the console as it arrives
        - true/1/yes/on = forward live
        - false/0/no/off = buffer, dump on failure (default)

    LC_CORE_LOG: verbosity forwarded to the child process
        - trace | debug | info (default) | warn | error

    LC_CORE_SPAWN_TIMEOUT_MS: readiness timeout in milliseconds
        - default: 10000

    LC_CORE_LOG_DIR: directory receiving one log file per spawned process
        - unset = no log files (default)

Malformed values never abort: they fall back to the default.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import ConfigError

__all__ = [
    "Config",
    "LogLevel",
    "SPAWNING_TIME",
    "DEFAULT_BINARY_PATH",
    "load_config",
    "get_config",
    "reload_config",
]

logger = logging.getLogger(__name__)

DEFAULT_BINARY_PATH = Path("../target/release/lc-core")

# Default readiness timeout (ms)
SPAWNING_TIME = 10000

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off", ""})


class LogLevel(str, Enum):
    """Verbosity forwarded to the core binary."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @classmethod
    def from_string(cls, value: str) -> "LogLevel":
        """Parse a level name, case-insensitively.

        Raises:
            ConfigError: unknown level name
        """
        value = value.strip().lower()
        if value == "warning":
            return cls.WARN
        for level in cls:
            if level.value == value:
                return level
        raise ConfigError(f"unknown log level: {value!r}")


@dataclass(frozen=True)
class Config:
    """Immutable harness configuration.

    Attributes:
        binary_path: lc-core executable
        debug_mode: harness debug behaviour
        display_log: forward child output live instead of buffering it
        core_log_level: verbosity forwarded to the child
        spawn_timeout_ms: readiness timeout
        log_dir: where to persist child output (None = not persisted)
    """

    binary_path: Path = DEFAULT_BINARY_PATH
    debug_mode: bool = False
    display_log: bool = False
    core_log_level: LogLevel = LogLevel.INFO
    spawn_timeout_ms: int = SPAWNING_TIME
    log_dir: Path | None = None

    def __post_init__(self) -> None:
        if self.spawn_timeout_ms <= 0:
            raise ValueError(f"spawn_timeout_ms must be positive, got {self.spawn_timeout_ms}")

    @property
    def spawn_timeout(self) -> float:
        """Readiness timeout in seconds."""
        return self.spawn_timeout_ms / 1000


def _parse_bool(value: str) -> bool:
    """Parse a boolean flag.

    "true"/"1"/"yes"/"on" are true, "false"/"0"/"no"/"off"/"" are false.
    Anything else is malformed.
    """
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigError(f"not a boolean: {value!r}")


def _parse_path(value: str) -> Path:
    value = value.strip()
    if not value:
        raise ConfigError("empty path")
    return Path(os.path.expanduser(value))


def _parse_optional_path(value: str) -> Path | None:
    value = value.strip()
    if not value:
        return None
    return Path(os.path.expanduser(value))


def _parse_timeout_ms(value: str) -> int:
    try:
        timeout = int(value.strip())
    except ValueError:
        raise ConfigError(f"not an integer: {value!r}") from None
    if timeout <= 0:
        raise ConfigError(f"timeout must be positive: {timeout}")
    return timeout


def _resolve(env: Mapping[str, str], name: str, parse, default):
    """Apply precedence: explicit environment value over built-in default."""
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return parse(raw)
    except ConfigError as e:
        logger.debug(f"Ignoring {name}={raw!r}: {e}; using default {default!r}")
        return default


def load_config(env: Mapping[str, str] | None = None) -> Config:
    """Resolve configuration from an environment mapping (default: os.environ)."""
    if env is None:
        env = os.environ

    return Config(
        binary_path=_resolve(env, "BINARY_PATH", _parse_path, DEFAULT_BINARY_PATH),
        debug_mode=_resolve(env, "DEBUG_MODE", _parse_bool, False),
        display_log=_resolve(env, "MOONBEAM_LOG", _parse_bool, False),
        core_log_level=_resolve(env, "LC_CORE_LOG", LogLevel.from_string, LogLevel.INFO),
        spawn_timeout_ms=_resolve(env, "LC_CORE_SPAWN_TIMEOUT_MS", _parse_timeout_ms, SPAWNING_TIME),
        log_dir=_resolve(env, "LC_CORE_LOG_DIR", _parse_optional_path, None),
    )


# Harness-lifetime instance (lazily resolved)
_config: Config | None = None


def get_config() -> Config:
    """Return the harness configuration, resolving it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Resolve the configuration again (for tests)."""
    global _config
    _config = load_config()
    return _config
