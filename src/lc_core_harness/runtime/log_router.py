"""Log routing for child process output.

Reads stdout and stderr of a spawned process line by line, one reader task
per stream, and:
- forwards every line to the console as it arrives (display mode), or
- keeps it in an in-memory buffer for a post-mortem dump (buffer mode).

The buffer is kept in both modes so readiness scanning and inspection after
the fact work regardless of display. Lines keep their order within a stream;
no order is promised across streams.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from ..errors import HarnessError
from .types import LogLine, LogSource

if TYPE_CHECKING:
    from ..config import Config
    from .types import ProcessHandle

__all__ = [
    "LogRouter",
    "LogSink",
]

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]


def _console_sink(text: str) -> None:
    sys.stderr.write(text + "\n")
    sys.stderr.flush()


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


class LogRouter:
    """Subscribes to both output streams of one process handle.

    Example:
        router = LogRouter(display_log=False)
        router.attach(handle)

        queue = router.subscribe()
        while (line := await queue.get()) is not None:
            ...

        router.dump("test failed")

    Attributes:
        display_log: forward lines live instead of only buffering them
        log_path: file receiving a copy of every line (None = not persisted)
    """

    def __init__(
        self,
        display_log: bool = False,
        *,
        sink: LogSink | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self.display_log = display_log
        self.log_path: Path | None = None
        self._sink = sink or _console_sink
        self._log_dir = log_dir
        self._log_file: TextIO | None = None
        self._pid: int | None = None
        self._lines: list[LogLine] = []
        self._subscribers: list[asyncio.Queue[LogLine | None]] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._open_streams = 0
        self._closed = False
        self._dumped = False

    @classmethod
    def from_config(cls, config: Config, *, sink: LogSink | None = None) -> "LogRouter":
        return cls(config.display_log, sink=sink, log_dir=config.log_dir)

    @property
    def lines(self) -> list[LogLine]:
        """Snapshot of every line read so far."""
        return list(self._lines)

    @property
    def attached(self) -> bool:
        return self._pid is not None

    @property
    def closed(self) -> bool:
        """Both streams reached end of file (or were abandoned)."""
        return self._closed

    def text(self, source: LogSource | None = None) -> str:
        """Buffered output as text, optionally restricted to one stream."""
        return "\n".join(
            line.text if source else str(line)
            for line in self._lines
            if source is None or line.source is source
        )

    def prepare(self) -> None:
        """Check the router can still be attached and create its log directory.

        Called before the process is spawned, so a bad log_dir fails early.

        Raises:
            HarnessError: the router is already attached to a process
            OSError: the log directory cannot be created
        """
        if self._pid is not None:
            raise HarnessError(f"log router already attached to pid={self._pid}")
        if self._log_dir is not None:
            self._log_dir.mkdir(parents=True, exist_ok=True)

    def attach(self, handle: ProcessHandle) -> None:
        """Start reading the handle's stdout and stderr.

        Raises:
            HarnessError: the router is already attached to a process
            OSError: the log file cannot be opened
        """
        self.prepare()

        process = handle.process
        self._pid = process.pid
        handle.router = self

        if self._log_dir is not None:
            self._open_log_file(self._log_dir)

        for source, stream in (
            (LogSource.STDOUT, process.stdout),
            (LogSource.STDERR, process.stderr),
        ):
            if stream is None:
                continue
            self._open_streams += 1
            self._tasks.append(
                asyncio.create_task(
                    self._read_stream(source, stream),
                    name=f"lc-core-{process.pid}-{source.value}",
                )
            )

        if self._open_streams == 0:
            self._finish()

        logger.debug(f"Log router attached to pid={process.pid} display={self.display_log}")

    def subscribe(self) -> asyncio.Queue[LogLine | None]:
        """Return a queue receiving every line, starting with those already read.

        None is delivered once both streams have ended.
        """
        queue: asyncio.Queue[LogLine | None] = asyncio.Queue()
        for line in self._lines:
            queue.put_nowait(line)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[LogLine | None]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def dump(self, reason: str = "") -> bool:
        """Write the buffered log to the sink for diagnosis.

        Only happens once, and never when the lines were already displayed.

        Returns:
            Whether anything was written
        """
        if self.display_log or self._dumped:
            return False
        self._dumped = True

        header = f"----- lc-core pid={self._pid} output"
        if reason:
            header += f" ({reason})"
        self._sink(header + " -----")
        if self._lines:
            for line in self._lines:
                self._sink(str(line))
        else:
            self._sink("(no output)")
        self._sink(f"----- end of lc-core pid={self._pid} output -----")
        return True

    async def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait for both readers to reach end of file.

        Returns:
            True if both streams ended within the timeout
        """
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending

    async def aclose(self, timeout: float = 1.0) -> None:
        """Stop reading; readers still running after the timeout are cancelled."""
        if not await self.wait_closed(timeout):
            logger.debug(f"Cancelling log readers of pid={self._pid}")
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._finish()

    async def _read_stream(self, source: LogSource, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError as e:
                    # Line longer than the stream limit; the reader has already discarded it
                    logger.warning(f"Dropped oversized {source.value} line from pid={self._pid}: {e}")
                    continue
                if not raw:
                    break
                self._publish(LogLine(source=source, timestamp=datetime.now(), text=_decode(raw)))
        finally:
            self._open_streams -= 1
            if self._open_streams <= 0:
                self._finish()

    def _publish(self, line: LogLine) -> None:
        self._lines.append(line)
        if self.display_log:
            self._sink(str(line))
        if self._log_file is not None:
            self._log_file.write(f"{line.timestamp.isoformat()} {line}\n")
        for queue in self._subscribers:
            queue.put_nowait(line)

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)
        self._subscribers.clear()
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
        logger.debug(f"Log streams of pid={self._pid} closed ({len(self._lines)} lines)")

    def _open_log_file(self, log_dir: Path) -> None:
        self.log_path = log_dir / f"lc-core-{self._pid}.log"
        # Line buffered so the file is readable while the process runs
        self._log_file = open(self.log_path, "w", encoding="utf-8", buffering=1)
        logger.debug(f"Writing output of pid={self._pid} to {self.log_path}")
