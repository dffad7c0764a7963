"""High-level entry point: launch a ready core process for one test.

Example:
    async with launch_core(args=["--rpc-port", str(pick_unused_port())]) as core:
        ...  # core.state is RUNNING, core.router holds its output
    # the process is gone here
"""

from __future__ import annotations

import logging
import socket
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager

from .config import Config, get_config
from .runtime.log_router import LogRouter, LogSink
from .runtime.readiness import DEFAULT_READINESS_PATTERN, ReadinessMonitor
from .runtime.supervisor import ProcessSupervisor
from .runtime.types import ProcessHandle

__all__ = ["launch_core", "pick_unused_port"]

logger = logging.getLogger(__name__)


def pick_unused_port(host: str = "127.0.0.1") -> int:
    """Return a TCP port that is currently free on host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        return sock.getsockname()[1]


@asynccontextmanager
async def launch_core(
    config: Config | None = None,
    *,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    ready_pattern: str = DEFAULT_READINESS_PATTERN,
    timeout_ms: int | None = None,
    supervisor: ProcessSupervisor | None = None,
    sink: LogSink | None = None,
) -> AsyncIterator[ProcessHandle]:
    """Spawn the core binary, wait until it is ready and yield its handle.

    Args:
        config: harness configuration (default: get_config())
        args: extra command line arguments for the binary
        env: extra environment variables for the binary
        ready_pattern: regex marking readiness in the output
        timeout_ms: readiness timeout (default: config.spawn_timeout_ms)
        supervisor: owner of the process (default: a new one)
        sink: where displayed and dumped log lines go (default: stderr)

    Raises:
        SpawnError: the binary could not be started
        ReadinessTimeoutError: no readiness marker in time
        UnexpectedExitError: the binary exited before becoming ready
    """
    if config is None:
        config = get_config()
    if supervisor is None:
        supervisor = ProcessSupervisor()

    router = LogRouter.from_config(config, sink=sink)
    try:
        async with supervisor.supervise(config, args=args, env=env, router=router) as handle:
            try:
                await ReadinessMonitor().wait_for_ready(handle, ready_pattern, timeout_ms)
                handle.mark_running()
                yield handle
            except Exception as e:
                router.dump(f"{type(e).__name__}: {e}")
                raise
        logger.debug(f"Core finished: {handle!r}")
    finally:
        if config.debug_mode and router.attached:
            router.dump("debug mode")
