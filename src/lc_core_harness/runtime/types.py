"""Runtime types: process states, log lines and process handles."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import HarnessError

if TYPE_CHECKING:
    from ..config import Config
    from .log_router import LogRouter
    from .supervisor import ProcessSupervisor

__all__ = [
    "ProcessState",
    "LogSource",
    "LogLine",
    "ProcessHandle",
]

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    """Lifecycle of a spawned process.

    STARTING -> READY -> RUNNING -> EXITED | FAILED
    EXITED and FAILED are terminal.
    """

    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessState.EXITED, ProcessState.FAILED)


_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.STARTING: frozenset({ProcessState.READY, ProcessState.EXITED, ProcessState.FAILED}),
    ProcessState.READY: frozenset({ProcessState.RUNNING, ProcessState.EXITED, ProcessState.FAILED}),
    ProcessState.RUNNING: frozenset({ProcessState.EXITED, ProcessState.FAILED}),
    ProcessState.EXITED: frozenset(),
    ProcessState.FAILED: frozenset(),
}


class LogSource(str, Enum):
    """Output stream a log line came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class LogLine:
    """One line of child output.

    Attributes:
        source: stream the line was read from
        timestamp: when the harness read it
        text: decoded line without its terminator
    """

    source: LogSource
    timestamp: datetime
    text: str

    def __str__(self) -> str:
        return f"[{self.source.value}] {self.text}"


@dataclass(eq=False)
class ProcessHandle:
    """A spawned core process, owned by exactly one ProcessSupervisor.

    Attributes:
        process: the asyncio subprocess
        owner: supervisor that spawned it (the only one allowed to kill or wait on it)
        config: configuration it was spawned with
        argv: full command line
        router: log router attached to its output streams
        state: lifecycle state (strictly forward)
        exit_code: returncode once reaped
        started_at: spawn time
    """

    process: asyncio.subprocess.Process
    owner: ProcessSupervisor
    config: Config
    argv: list[str]
    router: LogRouter | None = None
    state: ProcessState = ProcessState.STARTING
    exit_code: int | None = None
    started_at: datetime = field(default_factory=datetime.now)

    # Set when the owner itself asked the process to stop
    stop_requested: bool = field(default=False, repr=False)
    # Set when the process never became usable (timeout / early exit)
    readiness_failed: bool = field(default=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_alive(self) -> bool:
        """Whether the OS process has not been reaped yet."""
        return self.process.returncode is None

    def transition(self, new_state: ProcessState) -> None:
        """Move to a later state.

        Raises:
            HarnessError: the transition would go backwards or leave a terminal state
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise HarnessError(
                f"invalid transition for pid={self.pid}: "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug(f"pid={self.pid} {self.state.value} -> {new_state.value}")
        self.state = new_state

    def mark_running(self) -> None:
        """READY -> RUNNING, once the test body takes over."""
        self.transition(ProcessState.RUNNING)

    def settle(self) -> None:
        """Record the exit code and move to the matching terminal state.

        Called after the process has been reaped. No-op if already terminal.
        """
        if self.state.is_terminal:
            return
        self.exit_code = self.process.returncode
        if self.readiness_failed or self.state is ProcessState.STARTING:
            self.transition(ProcessState.FAILED)
        elif self.exit_code == 0 or self.stop_requested:
            self.transition(ProcessState.EXITED)
        else:
            self.transition(ProcessState.FAILED)

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(pid={self.pid}, "
            f"state={self.state.value}, "
            f"exit_code={self.exit_code}, "
            f"binary={self.argv[0] if self.argv else '?'})"
        )
