"""Process supervisor with isolation and reliable termination.

This module provides:
- Spawning the core binary in its own process group/session
- Attaching its stdout/stderr to a LogRouter
- Idempotent termination (SIGTERM -> timeout -> SIGKILL)
- Cancel-safe waiting and scoped ownership (supervise())

Key design points:
- POSIX: start_new_session=True so signals reach the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- kill() is serialised per handle: the teardown, error and timeout paths
  may all call it, only the first one sends signals
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from ..config import Config
from ..errors import HarnessError, KillError, SpawnError
from .log_router import LogRouter
from .types import ProcessHandle

__all__ = [
    "ProcessSupervisor",
    "IS_WINDOWS",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
DEFAULT_DRAIN_TIMEOUT = 1.0  # seconds to wait for output streams after exit

# Per-line buffer limit for the child's pipes
STREAM_LIMIT = 1024 * 1024

DEFAULT_TERM_SIGNAL = signal.CTRL_BREAK_EVENT if IS_WINDOWS else signal.SIGTERM


@dataclass
class ProcessSupervisor:
    """Owns the lifecycle of the processes it spawns.

    Example:
        supervisor = ProcessSupervisor()
        async with supervisor.supervise(config) as handle:
            await ReadinessMonitor().wait_for_ready(handle)
            ...
        # the process is gone here, whatever happened inside the block

    Attributes:
        term_timeout: seconds to wait for a graceful exit before SIGKILL
        kill_timeout: seconds to wait after SIGKILL before giving up
        drain_timeout: seconds to wait for the output streams after exit
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    _handles: set[ProcessHandle] = field(default_factory=set, init=False, repr=False)

    @property
    def handles(self) -> list[ProcessHandle]:
        """Handles owned by this supervisor that are not terminal yet."""
        return [handle for handle in self._handles if not handle.is_terminal]

    async def spawn(
        self,
        config: Config,
        *,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        router: LogRouter | None = None,
    ) -> ProcessHandle:
        """Start the core binary and attach its output to a log router.

        Args:
            config: harness configuration (binary path, log level, display mode)
            args: extra command line arguments
            env: extra environment variables, merged over the inherited ones
            router: log router to attach (default: built from config)

        Returns:
            A handle in the STARTING state, owned by this supervisor

        Raises:
            SpawnError: the binary is missing, not executable or refused to start,
                or its log file cannot be written
            HarnessError: the given router is already attached to another process
        """
        binary = config.binary_path
        self._check_binary(config)

        if router is None:
            router = LogRouter.from_config(config)
        try:
            router.prepare()
        except OSError as e:
            raise SpawnError(binary, f"log directory unusable: {e}") from e

        argv = [str(binary), *args]
        kwargs = self._build_subprocess_kwargs(config, env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                **kwargs,
            )
        except OSError as e:
            raise SpawnError(binary, str(e)) from e

        handle = ProcessHandle(process=process, owner=self, config=config, argv=argv)
        self._handles.add(handle)

        try:
            router.attach(handle)
        except BaseException as e:
            logger.warning(f"Setting up core pid={process.pid} failed, killing it: {e}")
            await asyncio.shield(self._discard(handle))
            if isinstance(e, OSError):
                raise SpawnError(binary, str(e)) from e
            raise

        logger.debug(
            f"Started core pid={process.pid} "
            f"argv={argv} log_level={config.core_log_level.value}"
        )
        return handle

    async def kill(self, handle: ProcessHandle, sig: int = DEFAULT_TERM_SIGNAL) -> None:
        """Terminate the process and reap it.

        Idempotent: calling it on a handle that is already terminal does nothing.
        Escalates to SIGKILL when the first signal is ignored.

        Raises:
            HarnessError: the handle belongs to another supervisor
            KillError: the process survived SIGKILL
        """
        self._check_owner(handle)

        async with handle._lock:
            if handle.is_terminal:
                return
            if handle.is_alive:
                handle.stop_requested = True
                await self._shielded_terminate(handle, sig)
            await self._reap(handle)

    async def wait(self, handle: ProcessHandle, timeout: float | None = None) -> int:
        """Wait until the process exits and return its exit code.

        If the timeout elapses, or the waiting task is cancelled, the process
        is killed before returning (or before the cancellation propagates).

        Raises:
            HarnessError: the handle belongs to another supervisor
        """
        self._check_owner(handle)

        try:
            await asyncio.wait_for(handle.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"pid={handle.pid} still running after {timeout}s, killing it")
            await self.kill(handle)
        except asyncio.CancelledError:
            await asyncio.shield(self.kill(handle))
            raise

        async with handle._lock:
            await self._reap(handle)
        if handle.exit_code is None:
            raise HarnessError(f"pid={handle.pid} has no exit code after reaping")
        return handle.exit_code

    @asynccontextmanager
    async def supervise(
        self,
        config: Config,
        *,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        router: LogRouter | None = None,
    ) -> AsyncIterator[ProcessHandle]:
        """Spawn a process for the duration of the block.

        The process is killed on every exit path, including exceptions and
        cancellation of the enclosing task.
        """
        handle = await self.spawn(config, args=args, env=env, router=router)
        try:
            yield handle
        finally:
            await self._safe_cleanup(handle)

    async def close(self) -> None:
        """Kill every process this supervisor still owns."""
        for handle in list(self._handles):
            try:
                await self.kill(handle)
            except KillError as e:
                logger.warning(f"Could not kill pid={handle.pid}: {e}")
        self._handles.clear()

    def _check_binary(self, config: Config) -> None:
        binary = config.binary_path
        if not binary.exists():
            raise SpawnError(binary, "no such file")
        if not binary.is_file():
            raise SpawnError(binary, "not a regular file")
        if not IS_WINDOWS and not os.access(binary, os.X_OK):
            raise SpawnError(binary, "not executable")

    def _check_owner(self, handle: ProcessHandle) -> None:
        if handle.owner is not self:
            raise HarnessError(f"pid={handle.pid} is owned by another supervisor")

    def _build_subprocess_kwargs(
        self,
        config: Config,
        extra_env: Mapping[str, str] | None,
    ) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        The child's verbosity is forwarded through its environment.
        """
        env = dict(os.environ)
        if extra_env:
            env.update(extra_env)
        env["LC_CORE_LOG"] = config.core_log_level.value
        env["RUST_LOG"] = config.core_log_level.value

        kwargs: dict[str, Any] = {"env": env}

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def _safe_cleanup(self, handle: ProcessHandle) -> None:
        """Kill the process, shielded from cancellation of the caller."""
        try:
            await asyncio.shield(self.kill(handle))
        except asyncio.CancelledError:
            # The shielded kill keeps running; wait for it so nothing outlives the block
            await self.kill(handle)
            raise

    async def _discard(self, handle: ProcessHandle) -> None:
        """Kill and reap a process whose setup failed before spawn() returned."""
        handle.readiness_failed = True
        async with handle._lock:
            if handle.is_alive:
                handle.stop_requested = True
                await self._terminate_process(handle.process, DEFAULT_TERM_SIGNAL)
            await self._reap(handle)

    async def _shielded_terminate(self, handle: ProcessHandle, sig: int) -> None:
        try:
            await asyncio.shield(self._terminate_process(handle.process, sig))
        except asyncio.CancelledError:
            await self._terminate_process(handle.process, sig)
            raise

    async def _reap(self, handle: ProcessHandle) -> None:
        """Collect the exit status, drain output and settle the handle.

        Caller holds handle._lock.
        """
        if handle.is_terminal:
            return
        await handle.process.wait()
        if handle.router is not None:
            await handle.router.aclose(self.drain_timeout)
        handle.settle()
        self._handles.discard(handle)
        logger.debug(f"Reaped {handle!r}")

    async def _terminate_process(
        self,
        process: asyncio.subprocess.Process,
        sig: int,
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send sig (SIGTERM, or CTRL_BREAK_EVENT on Windows) to the group
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit, else raise KillError
        """
        pid = process.pid
        logger.debug(f"Terminating core pid={pid}")

        try:
            # Step 1: Graceful termination
            if IS_WINDOWS:
                self._windows_signal(process, sig)
            else:
                self._posix_signal(process, sig)

            # Step 2: Wait for graceful exit
            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Core terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                logger.warning(
                    f"Core pid={pid} ignored signal {sig} for {self.term_timeout}s, escalating to kill"
                )

            # Step 3: Force kill
            if IS_WINDOWS:
                process.kill()
            else:
                self._posix_signal(process, signal.SIGKILL)

        except ProcessLookupError:
            # Process already exited
            logger.debug(f"Core already exited pid={pid}")

        # Step 4: Wait for forced exit
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
            logger.debug(f"Core killed pid={pid} returncode={process.returncode}")
        except asyncio.TimeoutError:
            logger.error(f"Core did not exit after kill pid={pid}")
            raise KillError(pid) from None

    def _posix_signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        """Send a signal to the process group on POSIX systems."""
        try:
            # Group id equals pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent signal {sig} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(sig)

    def _windows_signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        """Send CTRL_BREAK_EVENT (or terminate) on Windows."""
        try:
            if sig == signal.CTRL_BREAK_EVENT:
                os.kill(process.pid, sig)
                logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
            else:
                process.terminate()
        except OSError as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()
