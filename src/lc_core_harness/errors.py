"""Harness exception classes."""

from __future__ import annotations

from pathlib import Path

__all__ = [
    "HarnessError",
    "ConfigError",
    "SpawnError",
    "ReadinessTimeoutError",
    "UnexpectedExitError",
    "KillError",
]


class HarnessError(Exception):
    """Base harness exception."""
    pass


class ConfigError(HarnessError):
    """Malformed environment value (always recovered by falling back to the default)."""
    pass


class SpawnError(HarnessError):
    """The core binary could not be started.

    Attributes:
        binary_path: path that was tried
        reason: why it was rejected
    """

    def __init__(self, binary_path: Path | str, reason: str) -> None:
        self.binary_path = Path(binary_path)
        self.reason = reason
        super().__init__(f"cannot spawn {binary_path}: {reason}")


class ReadinessTimeoutError(HarnessError, TimeoutError):
    """No readiness marker within the spawn timeout.

    Attributes:
        pid: process id of the killed child
        timeout_ms: the timeout that elapsed
    """

    def __init__(self, pid: int, timeout_ms: int) -> None:
        self.pid = pid
        self.timeout_ms = timeout_ms
        super().__init__(f"process pid={pid} not ready after {timeout_ms}ms")


class UnexpectedExitError(HarnessError):
    """The process exited before becoming ready.

    Attributes:
        pid: process id
        exit_code: returncode as reported by asyncio (negative for signals)
    """

    def __init__(self, pid: int, exit_code: int | None) -> None:
        self.pid = pid
        self.exit_code = exit_code
        super().__init__(f"process pid={pid} exited with code {exit_code} before becoming ready")


class KillError(HarnessError):
    """The process survived SIGTERM and SIGKILL."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        super().__init__(f"process pid={pid} did not exit after kill")
