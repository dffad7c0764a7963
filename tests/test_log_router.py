"""LogRouter tests.

Uses in-memory StreamReaders fed by the test instead of a real process.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from lc_core_harness.errors import HarnessError
from lc_core_harness.runtime.log_router import LogRouter
from lc_core_harness.runtime.types import LogSource


class FakeProcess:
    """Just enough of asyncio.subprocess.Process for the router."""

    def __init__(self, pid: int = 1234) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()

    def close(self) -> None:
        self.stdout.feed_eof()
        self.stderr.feed_eof()


def make_handle(process: FakeProcess) -> SimpleNamespace:
    return SimpleNamespace(process=process, router=None)


class TestBuffering:
    """Buffer mode (display_log disabled)."""

    @pytest.mark.asyncio
    async def test_lines_are_buffered_not_displayed(self):
        sink: list[str] = []
        router = LogRouter(display_log=False, sink=sink.append)
        process = FakeProcess()
        handle = make_handle(process)
        router.attach(handle)

        process.stdout.feed_data(b"hello\nworld\n")
        process.close()
        assert await router.wait_closed(timeout=1.0)

        assert handle.router is router
        assert [line.text for line in router.lines] == ["hello", "world"]
        assert all(line.source is LogSource.STDOUT for line in router.lines)
        assert sink == []

    @pytest.mark.asyncio
    async def test_decoding(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))

        process.stderr.feed_data(b"crlf line\r\n\xff bad byte\nno newline at end")
        process.close()
        await router.wait_closed(timeout=1.0)

        assert [line.text for line in router.lines] == [
            "crlf line",
            "\ufffd bad byte",
            "no newline at end",
        ]

    @pytest.mark.asyncio
    async def test_dump_once(self):
        sink: list[str] = []
        router = LogRouter(sink=sink.append)
        process = FakeProcess(pid=77)
        router.attach(make_handle(process))
        process.stdout.feed_data(b"starting\n")
        process.close()
        await router.wait_closed(timeout=1.0)

        assert router.dump("test failed") is True
        assert sink[0] == "----- lc-core pid=77 output (test failed) -----"
        assert "[stdout] starting" in sink
        assert sink[-1] == "----- end of lc-core pid=77 output -----"

        assert router.dump("again") is False
        assert len(sink) == 3

    @pytest.mark.asyncio
    async def test_dump_without_output(self):
        sink: list[str] = []
        router = LogRouter(sink=sink.append)
        process = FakeProcess()
        router.attach(make_handle(process))
        process.close()
        await router.wait_closed(timeout=1.0)

        router.dump()
        assert "(no output)" in sink


class TestDisplay:
    """Display mode (display_log enabled)."""

    @pytest.mark.asyncio
    async def test_lines_forwarded_immediately(self):
        sink: list[str] = []
        router = LogRouter(display_log=True, sink=sink.append)
        process = FakeProcess()
        router.attach(make_handle(process))

        process.stdout.feed_data(b"first\n")
        for _ in range(10):
            await asyncio.sleep(0)
            if sink:
                break
        assert sink == ["[stdout] first"]

        process.stderr.feed_data(b"second\n")
        process.close()
        await router.wait_closed(timeout=1.0)
        assert sink == ["[stdout] first", "[stderr] second"]

    @pytest.mark.asyncio
    async def test_no_dump_when_already_displayed(self):
        sink: list[str] = []
        router = LogRouter(display_log=True, sink=sink.append)
        process = FakeProcess()
        router.attach(make_handle(process))
        process.stdout.feed_data(b"line\n")
        process.close()
        await router.wait_closed(timeout=1.0)

        assert router.dump("failure") is False
        assert sink == ["[stdout] line"]


class TestOrdering:
    """Within one stream, lines keep their write order."""

    @pytest.mark.asyncio
    async def test_per_stream_order(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))

        for i in range(200):
            process.stdout.feed_data(f"out {i}\n".encode())
            process.stderr.feed_data(f"err {i}\n".encode())
            if i % 17 == 0:
                await asyncio.sleep(0)
        process.close()
        await router.wait_closed(timeout=1.0)

        assert router.text(LogSource.STDOUT).splitlines() == [f"out {i}" for i in range(200)]
        assert router.text(LogSource.STDERR).splitlines() == [f"err {i}" for i in range(200)]


class TestSubscribe:
    """Fan-out to subscribers."""

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_replay(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))

        process.stdout.feed_data(b"early\n")
        while not router.lines:
            await asyncio.sleep(0)

        queue = router.subscribe()
        process.stdout.feed_data(b"late\n")
        process.close()

        received = []
        while (line := await asyncio.wait_for(queue.get(), timeout=1.0)) is not None:
            received.append(line.text)
        assert received == ["early", "late"]

    @pytest.mark.asyncio
    async def test_subscribe_after_close(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))
        process.stdout.feed_data(b"only\n")
        process.close()
        await router.wait_closed(timeout=1.0)
        assert router.closed

        queue = router.subscribe()
        assert queue.get_nowait().text == "only"
        assert queue.get_nowait() is None

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))
        queue = router.subscribe()
        router.unsubscribe(queue)

        process.stdout.feed_data(b"ignored\n")
        process.close()
        await router.wait_closed(timeout=1.0)
        assert queue.empty()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_attach_twice_rejected(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))
        with pytest.raises(HarnessError):
            router.attach(make_handle(FakeProcess(pid=2)))
        process.close()
        await router.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_stuck_readers(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))
        queue = router.subscribe()

        # Streams never reach EOF
        await router.aclose(timeout=0.05)
        assert router.closed
        assert queue.get_nowait() is None

    @pytest.mark.asyncio
    async def test_log_file(self, tmp_path: Path):
        router = LogRouter(sink=lambda _: None, log_dir=tmp_path / "logs")
        process = FakeProcess(pid=99)
        router.attach(make_handle(process))
        process.stdout.feed_data(b"persisted\n")
        process.close()
        await router.wait_closed(timeout=1.0)

        assert router.log_path == tmp_path / "logs" / "lc-core-99.log"
        content = router.log_path.read_text(encoding="utf-8")
        assert "[stdout] persisted" in content

    def test_prepare_creates_log_dir(self, tmp_path: Path):
        router = LogRouter(sink=lambda _: None, log_dir=tmp_path / "nested" / "logs")
        router.prepare()
        assert (tmp_path / "nested" / "logs").is_dir()

    def test_prepare_blocked_log_dir(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        router = LogRouter(sink=lambda _: None, log_dir=blocker / "logs")
        with pytest.raises(OSError):
            router.prepare()
        assert not router.attached

    @pytest.mark.asyncio
    async def test_prepare_rejects_attached_router(self):
        router = LogRouter(sink=lambda _: None)
        process = FakeProcess()
        router.attach(make_handle(process))
        with pytest.raises(HarnessError, match="already attached"):
            router.prepare()
        process.close()
        await router.aclose()
