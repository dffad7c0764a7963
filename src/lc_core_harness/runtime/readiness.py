"""Readiness detection for a freshly spawned core process.

wait_for_ready() races three signals:
(a) a log line matching the readiness marker,
(b) the process exiting,
(c) the spawn timeout elapsing.

The first one resolves the call and the other two are cancelled before it
returns, so a stale timer cannot fire after success and an exit observed
after a timeout is not reported as a crash.
"""

from __future__ import annotations

import asyncio
import logging
import re

import anyio

from ..errors import HarnessError, ReadinessTimeoutError, UnexpectedExitError
from .types import LogLine, ProcessHandle, ProcessState

__all__ = [
    "ReadinessMonitor",
    "DEFAULT_READINESS_PATTERN",
]

logger = logging.getLogger(__name__)

DEFAULT_READINESS_PATTERN = r"\*+ lc-core has fully started \*+"


def _compile(pattern: str | re.Pattern[str]) -> re.Pattern[str]:
    if isinstance(pattern, str):
        return re.compile(pattern)
    return pattern


class ReadinessMonitor:
    """Waits until a spawned process reports that it accepts work."""

    async def wait_for_ready(
        self,
        handle: ProcessHandle,
        pattern: str | re.Pattern[str] = DEFAULT_READINESS_PATTERN,
        timeout_ms: int | None = None,
    ) -> ProcessHandle:
        """Wait for the readiness marker.

        Args:
            handle: a STARTING handle with a log router attached
            pattern: regex searched in every output line
            timeout_ms: readiness timeout (default: handle.config.spawn_timeout_ms)

        Returns:
            The handle, now READY

        Raises:
            ReadinessTimeoutError: no marker within the timeout; the process was killed
            UnexpectedExitError: the process exited first; it has been reaped
        """
        if handle.state is not ProcessState.STARTING:
            raise HarnessError(f"pid={handle.pid} is {handle.state.value}, expected starting")
        if handle.router is None:
            raise HarnessError(f"pid={handle.pid} has no log router attached")

        regex = _compile(pattern)
        if timeout_ms is None:
            timeout_ms = handle.config.spawn_timeout_ms

        loop = asyncio.get_running_loop()
        started = loop.time()
        queue = handle.router.subscribe()

        marker_task = asyncio.create_task(self._watch_marker(queue, regex))
        exit_task = asyncio.create_task(handle.process.wait())
        done: set[asyncio.Task] = set()

        try:
            with anyio.move_on_after(timeout_ms / 1000):
                done, _ = await asyncio.wait(
                    {marker_task, exit_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
        finally:
            for task in (marker_task, exit_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(marker_task, exit_task, return_exceptions=True)
            handle.router.unsubscribe(queue)

        elapsed_ms = (loop.time() - started) * 1000

        # A process that has exited is never reported ready, even if it printed the marker
        if exit_task in done or not handle.is_alive:
            logger.warning(
                f"Core pid={handle.pid} exited with code {handle.process.returncode} "
                f"before becoming ready ({elapsed_ms:.0f}ms)"
            )
            await self._fail(handle, "exited before becoming ready")
            raise UnexpectedExitError(handle.pid, handle.exit_code)

        if marker_task in done:
            line = marker_task.result()
            if line is not None:
                handle.transition(ProcessState.READY)
                logger.info(f"Core pid={handle.pid} ready after {elapsed_ms:.0f}ms: {line.text}")
                return handle

            # Both streams closed without a marker: the process is on its way out
            await self._fail(handle, "output closed before becoming ready")
            raise UnexpectedExitError(handle.pid, handle.exit_code)

        logger.warning(f"Core pid={handle.pid} not ready after {timeout_ms}ms, killing it")
        await self._fail(handle, f"not ready after {timeout_ms}ms")
        raise ReadinessTimeoutError(handle.pid, timeout_ms)

    async def _watch_marker(
        self,
        queue: asyncio.Queue[LogLine | None],
        regex: re.Pattern[str],
    ) -> LogLine | None:
        """Return the first matching line, or None when the streams end."""
        while True:
            line = await queue.get()
            if line is None:
                return None
            if regex.search(line.text):
                return line

    async def _fail(self, handle: ProcessHandle, reason: str) -> None:
        """Have the owner kill and reap the process, then dump its log."""
        handle.readiness_failed = True
        try:
            await handle.owner.kill(handle)
        finally:
            if handle.router is not None:
                handle.router.dump(reason)
