"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import stat
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
import pytest_asyncio

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from lc_core_harness.config import Config, LogLevel  # noqa: E402
from lc_core_harness.runtime.supervisor import IS_WINDOWS, ProcessSupervisor  # noqa: E402

pytest_plugins = ["pytester", "lc_core_harness.pytest_plugin"]

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_CORE_PATH = FIXTURES_DIR / "fake_core.py"

posix_only = pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")


def pid_exists(pid: int) -> bool:
    """Whether an OS process with this pid is still around."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@pytest.fixture
def fake_core(tmp_path: Path) -> Path:
    """Executable shim running the fake core with the current interpreter."""
    shim = tmp_path / "bin" / "lc-core"
    shim.parent.mkdir()
    shim.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_CORE_PATH}" "$@"\n')
    shim.chmod(shim.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return shim


@pytest.fixture
def make_config(fake_core: Path) -> Callable[..., Config]:
    """Build a Config pointing at the fake core."""

    def factory(**overrides) -> Config:
        values = {
            "binary_path": fake_core,
            "core_log_level": LogLevel.INFO,
            "spawn_timeout_ms": 10000,
        }
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def config(make_config: Callable[..., Config]) -> Config:
    return make_config()


@pytest_asyncio.fixture
async def supervisor() -> AsyncIterator[ProcessSupervisor]:
    """Supervisor with short timeouts; kills anything left over."""
    supervisor = ProcessSupervisor(term_timeout=0.5, kill_timeout=0.5)
    yield supervisor
    await supervisor.close()
